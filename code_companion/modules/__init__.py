# Code Companion Modules

# Pydantic schemas
from .schemas import (
    AssembledContext,
    ChatMessage,
    ChunkType,
    ContextChunk,
    CostTracker,
    ErrorCode,
    ErrorDetails,
    LedgerState,
    ModelConfig,
    ModelResponse,
    OrchestrationResult,
    RetryConfig,
    SendOptions,
    TaskType,
    TokenPricing,
    Usage,
)

# Configuration
from .config import CompanionConfig, load_config

# Errors, retry, cancellation
from .errors import (
    CancellationToken,
    CompanionError,
    CostLimitExceededError,
    ProviderResponseError,
    RequestCancelled,
    classify_error,
    with_fallback,
    with_retry,
)

# Pipeline services
from .context import ContextAssembler, ContextChunkStore, ContextGatherer, ContextPrioritizer
from .response_cache import ResponseCache
from .cost_ledger import CostLedger
from .router import ModelNotFoundError, ProviderRouter, RouterError
from .orchestrator import RequestOrchestrator, build_orchestrator

# HTTP app factory: from .api import create_app

__all__ = [
    # Schemas
    "AssembledContext",
    "ChatMessage",
    "ChunkType",
    "ContextChunk",
    "CostTracker",
    "ErrorCode",
    "ErrorDetails",
    "LedgerState",
    "ModelConfig",
    "ModelResponse",
    "OrchestrationResult",
    "RetryConfig",
    "SendOptions",
    "TaskType",
    "TokenPricing",
    "Usage",
    # Config
    "CompanionConfig",
    "load_config",
    # Errors
    "CancellationToken",
    "CompanionError",
    "CostLimitExceededError",
    "ProviderResponseError",
    "RequestCancelled",
    "classify_error",
    "with_fallback",
    "with_retry",
    # Services
    "ContextAssembler",
    "ContextChunkStore",
    "ContextGatherer",
    "ContextPrioritizer",
    "ResponseCache",
    "CostLedger",
    "ModelNotFoundError",
    "ProviderRouter",
    "RouterError",
    "RequestOrchestrator",
    "build_orchestrator",
]
