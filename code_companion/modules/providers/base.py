"""
Provider boundary.

Every backend speaks the OpenAI-style chat-completion contract through
LiteLLM. Raw payloads are validated into the models below the moment they
arrive; anything that does not fit becomes a ProviderResponseError instead of
an unchecked field access further down the pipeline.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import ProviderSettings
from ..errors import ERROR_CATALOG, CompanionError, ProviderResponseError
from ..schemas import ChatMessage, ErrorCode, ModelConfig, ModelResponse, SendOptions, Usage


# Same keyword signature as litellm.acompletion.
CompletionCall = Callable[..., Awaitable[Any]]


# =============================================================================
# WIRE PAYLOAD
# =============================================================================


class CompletionMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: Optional[str] = None


class CompletionChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: CompletionMessage


class CompletionUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt_tokens: int = 0
    completion_tokens: int = 0


class CompletionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    choices: List[CompletionChoice] = Field(min_length=1)
    usage: Optional[CompletionUsage] = None


def parse_completion(raw: Any, provider: str) -> CompletionPayload:
    if isinstance(raw, dict):
        data = raw
    elif hasattr(raw, "model_dump"):
        data = raw.model_dump()
    else:
        raise ProviderResponseError(provider, f"unexpected payload type {type(raw).__name__}")

    try:
        return CompletionPayload.model_validate(data)
    except ValidationError as e:
        logger.error(f"[{provider}] Malformed completion payload: {e}")
        raise ProviderResponseError(provider, str(e)) from e


# =============================================================================
# PROVIDER
# =============================================================================


class BaseModelProvider(ABC):
    """One model backend: a catalog plus a chat call."""

    name: ClassVar[str]
    display_name: ClassVar[str]

    def __init__(
        self,
        api_key: Optional[str],
        settings: Optional[ProviderSettings] = None,
        completion_call: Optional[CompletionCall] = None,
    ):
        self.api_key = (api_key or "").strip() or None
        self.settings = settings or ProviderSettings()
        self._completion_call = completion_call

    @property
    def has_api_key(self) -> bool:
        return self.api_key is not None

    @abstractmethod
    async def get_available_models(self, force_refresh: bool = False) -> List[ModelConfig]:
        ...

    @abstractmethod
    def litellm_model(self, model: ModelConfig) -> str:
        ...

    @abstractmethod
    def default_max_tokens(self, model: ModelConfig) -> int:
        ...

    def extra_completion_kwargs(self) -> Dict[str, Any]:
        return {}

    @staticmethod
    def calculate_cost(input_tokens: int, output_tokens: int, model: ModelConfig) -> float:
        pricing = model.cost_per_1k_tokens
        return (input_tokens / 1000) * pricing.input + (output_tokens / 1000) * pricing.output

    async def _complete(self, **kwargs: Any) -> Any:
        if self._completion_call is not None:
            return await self._completion_call(**kwargs)

        import litellm  # local import for testability

        return await litellm.acompletion(**kwargs)

    async def send_message(
        self,
        messages: Sequence[ChatMessage],
        model: ModelConfig,
        options: Optional[SendOptions] = None,
    ) -> ModelResponse:
        if not self.has_api_key:
            raise CompanionError(
                ERROR_CATALOG[ErrorCode.API_KEY_INVALID],
                context=self.name,
                user_message=f"{self.display_name} API key is required.",
            )

        opts = options or SendOptions()
        kwargs: Dict[str, Any] = {
            "model": self.litellm_model(model),
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": opts.max_tokens or self.default_max_tokens(model),
            "temperature": self.settings.default_temperature if opts.temperature is None else opts.temperature,
            "api_key": self.api_key,
        }
        kwargs.update(self.extra_completion_kwargs())

        start = time.time()
        raw = await asyncio.wait_for(self._complete(**kwargs), timeout=self.settings.request_timeout_seconds)
        elapsed_ms = int((time.time() - start) * 1000)

        payload = parse_completion(raw, self.name)
        usage = payload.usage or CompletionUsage()
        total_cost = self.calculate_cost(usage.prompt_tokens, usage.completion_tokens, model)

        logger.debug(
            f"[{self.name}:{model.id}] {usage.prompt_tokens} in / {usage.completion_tokens} out, "
            f"${total_cost:.6f}, {elapsed_ms}ms"
        )

        return ModelResponse(
            content=payload.choices[0].message.content or "",
            usage=Usage(
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
                total_cost=total_cost,
            ),
            model=model.id,
            provider=self.name,
            processing_time_ms=elapsed_ms,
        )
