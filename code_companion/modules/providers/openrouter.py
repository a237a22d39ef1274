"""
OpenRouter aggregator backend.

The catalog is fetched over HTTPS and cached for ``catalog_ttl_seconds``.
When a refresh fails and an earlier fetch succeeded, the stale catalog is
served instead of an error.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError

from ..config import ProviderSettings
from ..errors import ProviderResponseError, wrap_error
from ..schemas import ModelConfig, TokenPricing
from .base import BaseModelProvider, CompletionCall


CHAT_MAX_TOKENS_CAP = 4096
DEFAULT_CONTEXT_LENGTH = 4096


# (substrings matched against id/name, capabilities added)
CAPABILITY_RULES = (
    (("code", "deepseek-coder"), ("code-generation", "code-review", "debugging")),
    (("gpt-4", "claude", "gemini"), ("advanced-reasoning", "complex-analysis")),
    (("vision",), ("image-analysis",)),
)


def infer_capabilities(model_id: str, model_name: str) -> List[str]:
    haystack = f"{model_id.lower()} {model_name.lower()}"
    capabilities = ["chat"]
    for needles, caps in CAPABILITY_RULES:
        if any(n in haystack for n in needles):
            capabilities.extend(c for c in caps if c not in capabilities)
    return capabilities


class OpenRouterPricing(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt: Union[str, float] = "0"
    completion: Union[str, float] = "0"


class OpenRouterModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None
    context_length: Optional[int] = None
    pricing: Optional[OpenRouterPricing] = None

    def to_model_config(self) -> ModelConfig:
        pricing = self.pricing or OpenRouterPricing()
        name = self.name or self.id
        return ModelConfig(
            id=self.id,
            name=name,
            provider="openrouter",
            max_tokens=self.context_length or DEFAULT_CONTEXT_LENGTH,
            # Upstream prices are per token.
            cost_per_1k_tokens=TokenPricing(
                input=float(pricing.prompt or 0) * 1000,
                output=float(pricing.completion or 0) * 1000,
            ),
            capabilities=infer_capabilities(self.id, name),
        )


class OpenRouterCatalog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[Dict[str, Any]]


class OpenRouterProvider(BaseModelProvider):
    name = "openrouter"
    display_name = "OpenRouter"

    def __init__(
        self,
        api_key: Optional[str],
        settings: Optional[ProviderSettings] = None,
        completion_call: Optional[CompletionCall] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(api_key, settings, completion_call)
        self._http_client = http_client
        self._clock = clock
        self._cached_models: List[ModelConfig] = []
        self._last_fetch: Optional[float] = None

    @property
    def catalog_age_seconds(self) -> Optional[float]:
        if self._last_fetch is None:
            return None
        return self._clock() - self._last_fetch

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key or ''}",
            "HTTP-Referer": self.settings.openrouter_referer,
            "X-Title": self.settings.openrouter_title,
        }

    async def _get(self, url: str) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.get(url, headers=self._headers())
        async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds, follow_redirects=True) as client:
            return await client.get(url, headers=self._headers())

    async def _fetch_catalog(self) -> List[ModelConfig]:
        url = f"{self.settings.openrouter_base_url.rstrip('/')}/models"
        resp = await self._get(url)
        resp.raise_for_status()

        try:
            catalog = OpenRouterCatalog.model_validate(resp.json())
        except (ValidationError, ValueError) as e:
            raise ProviderResponseError(self.name, f"malformed catalog: {e}") from e

        # Variable-priced routers such as openrouter/auto report "-1".
        models: List[ModelConfig] = []
        for raw in catalog.data:
            try:
                models.append(OpenRouterModel.model_validate(raw).to_model_config())
            except (ValidationError, ValueError) as e:
                logger.warning(f"Skipping OpenRouter model {raw.get('id', '?')}: {e}")
        return models

    async def get_available_models(self, force_refresh: bool = False) -> List[ModelConfig]:
        age = self.catalog_age_seconds
        if not force_refresh and self._cached_models and age is not None and age < self.settings.catalog_ttl_seconds:
            return list(self._cached_models)

        try:
            models = await self._fetch_catalog()
        except Exception as e:
            if self._cached_models:
                logger.warning(f"Using cached OpenRouter models due to API error: {e}")
                return list(self._cached_models)
            raise wrap_error(e, f"{self.name}:catalog") from e

        self._cached_models = models
        self._last_fetch = self._clock()
        logger.info(f"Fetched {len(models)} OpenRouter model(s)")
        return list(models)

    def litellm_model(self, model: ModelConfig) -> str:
        return f"openrouter/{model.id}"

    def default_max_tokens(self, model: ModelConfig) -> int:
        return min(model.max_tokens, CHAT_MAX_TOKENS_CAP)

    def extra_completion_kwargs(self) -> Dict[str, Any]:
        return {
            "api_base": self.settings.openrouter_base_url,
            "extra_headers": {
                "HTTP-Referer": self.settings.openrouter_referer,
                "X-Title": self.settings.openrouter_title,
            },
        }
