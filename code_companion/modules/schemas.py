"""
Code Companion - Core Data Structures (Pydantic Schemas)

Defines the data models shared across the request pipeline:
- ContextChunk: A typed, sourced, timestamped context fragment
- ChatMessage: One turn of the (externally owned) conversation
- ModelConfig: Immutable catalog entry for a provider model
- ModelResponse: Canonical response shape produced at the provider boundary
- CostTracker: Daily/total spend snapshot
- ErrorDetails: Static classification catalog entry
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS
# =============================================================================


class ChunkType(str, Enum):
    """Kind of context a chunk was gathered from."""

    WORKSPACE = "workspace"
    FILE = "file"
    SELECTION = "selection"
    CHAT_HISTORY = "chat_history"
    ERROR = "error"
    DOCUMENTATION = "documentation"


class TaskType(str, Enum):
    """Kind of work the user is asking for; drives relevance bonuses."""

    CODING = "coding"
    GENERAL = "general"
    ANALYSIS = "analysis"
    CREATIVE = "creative"


class ErrorCode(str, Enum):
    """Failure taxonomy used for retry policy and user-facing messages."""

    NETWORK_ERROR = "NETWORK_ERROR"
    API_KEY_INVALID = "API_KEY_INVALID"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    MODEL_NOT_AVAILABLE = "MODEL_NOT_AVAILABLE"
    CONTEXT_TOO_LARGE = "CONTEXT_TOO_LARGE"
    COST_LIMIT_EXCEEDED = "COST_LIMIT_EXCEEDED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class LedgerState(str, Enum):
    """Spend state relative to the daily limit."""

    NORMAL = "normal"
    WARNING = "warning"  # [80%, 90%)
    NEAR_LIMIT = "near_limit"  # [90%, 100%)
    BLOCKED = "blocked"  # >= 100%


ProviderName = Literal["deepseek", "openrouter"]


# =============================================================================
# CONTEXT
# =============================================================================


class ContextChunk(BaseModel):
    """A fragment eligible for inclusion in a model prompt."""

    content: str
    type: ChunkType
    priority: int
    timestamp: float  # epoch seconds
    token_count: int
    source: str
    relevance_score: float = 0.0


class ChatMessage(BaseModel):
    """One conversation turn.

    ``context_embedded`` is set by upstream collaborators that already inlined
    their own context; the assembler passes such conversations through as-is.
    """

    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: Optional[datetime] = None
    context_embedded: bool = False


class AssembledContext(BaseModel):
    optimized_messages: List[ChatMessage]
    context_summary: str
    tokens_used: int  # supplemental context only
    message_tokens: int
    available_for_context: int
    compression_applied: bool


# =============================================================================
# PROVIDERS
# =============================================================================


class TokenPricing(BaseModel):
    model_config = ConfigDict(frozen=True)

    input: float = Field(ge=0.0)  # USD per 1k tokens
    output: float = Field(ge=0.0)


class ModelConfig(BaseModel):
    """Catalog entry. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    provider: ProviderName
    max_tokens: int = Field(gt=0)
    cost_per_1k_tokens: TokenPricing
    capabilities: List[str] = Field(default_factory=list)


class SendOptions(BaseModel):
    max_tokens: Optional[int] = Field(default=None, gt=0)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0


class ModelResponse(BaseModel):
    """Canonical response shape, tagged with the provider that produced it."""

    content: str
    usage: Usage
    model: str
    provider: ProviderName
    cached: bool = False
    processing_time_ms: int = 0


# =============================================================================
# COST / ERRORS
# =============================================================================


class CostTracker(BaseModel):
    daily_usage: float = 0.0
    daily_limit: float = 5.0
    total_usage: float = 0.0
    last_reset: datetime = Field(default_factory=datetime.now)


class ErrorDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: ErrorCode
    message: str
    user_message: str
    suggestion: str
    is_retryable: bool


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)


# =============================================================================
# ORCHESTRATION
# =============================================================================


class OrchestrationResult(BaseModel):
    """What the UI layer receives for one chat turn."""

    content: str = ""
    usage: Optional[Usage] = None
    model: Optional[str] = None
    cached: bool = False
    context_summary: str = ""
    error_message: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error_message is None
