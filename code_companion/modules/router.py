"""
Provider Registry & Router.

Aggregates the catalogs of every configured backend and routes a chat call to
the backend that owns the requested model.

Design goals:
- Deterministic: catalog order is fixed provider precedence, then name.
- Budget first: the cost ledger is consulted before any provider is touched.
- Testable: providers, secret store and retry sleep are injectable.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from loguru import logger

from .collaborators import SecretStore
from .config import CompanionConfig
from .cost_ledger import CostLedger
from .errors import ERROR_CATALOG, CancellationToken, CompanionError, with_retry
from .providers import PROVIDER_PRECEDENCE, BaseModelProvider, DeepSeekProvider, OpenRouterProvider
from .providers.base import CompletionCall
from .schemas import ChatMessage, ErrorCode, ModelConfig, ModelResponse, RetryConfig, SendOptions


NO_MODELS_MESSAGE = (
    "No AI models available. Please configure your API keys:\n"
    "• DeepSeek API Key (DEEPSEEK_API_KEY): get one from https://platform.deepseek.com/\n"
    "• OpenRouter API Key (OPENROUTER_API_KEY): get one from https://openrouter.ai/ (optional)"
)


@dataclass(frozen=True)
class ProviderStatus:
    provider: str
    configured: bool
    models_available: bool


class RouterError(CompanionError):
    pass


class ModelNotFoundError(RouterError):
    def __init__(self, model_id: str, available: Sequence[str]):
        if available:
            message = f'Model "{model_id}" not found. Available models: {", ".join(available)}'
        else:
            message = NO_MODELS_MESSAGE
        # Retrying cannot make an unknown id appear.
        details = ERROR_CATALOG[ErrorCode.MODEL_NOT_AVAILABLE].model_copy(update={"is_retryable": False})
        super().__init__(details, context="router", user_message=message)
        self.model_id = model_id
        self.available = list(available)


def _precedence(provider: str) -> int:
    try:
        return PROVIDER_PRECEDENCE.index(provider)
    except ValueError:
        return len(PROVIDER_PRECEDENCE)


def sort_catalog(models: Sequence[ModelConfig]) -> List[ModelConfig]:
    return sorted(models, key=lambda m: (_precedence(m.provider), m.name.casefold()))


def build_providers(
    secrets: SecretStore,
    config: Optional[CompanionConfig] = None,
    completion_call: Optional[CompletionCall] = None,
) -> Dict[str, BaseModelProvider]:
    """Instantiate every backend that has an API key, in precedence order."""
    cfg = config or CompanionConfig()
    providers: Dict[str, BaseModelProvider] = {}

    deepseek_key = secrets.get_api_key("deepseek")
    if deepseek_key:
        providers["deepseek"] = DeepSeekProvider(deepseek_key, cfg.providers, completion_call)
        logger.info("DeepSeek provider initialized")
    else:
        logger.warning("DeepSeek API key not configured - DeepSeek models will not be available")

    openrouter_key = secrets.get_api_key("openrouter")
    if openrouter_key:
        providers["openrouter"] = OpenRouterProvider(openrouter_key, cfg.providers, completion_call)
        logger.info("OpenRouter provider initialized")

    return providers


class ProviderRouter:
    """
    Usage:
        router = ProviderRouter.from_secret_store(EnvSecretStore(), ledger, config)
        response = await router.send_message(messages, "deepseek-chat")
    """

    def __init__(
        self,
        providers: Dict[str, BaseModelProvider],
        ledger: CostLedger,
        retry_config: Optional[RetryConfig] = None,
        secrets: Optional[SecretStore] = None,
        config: Optional[CompanionConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.retry_config = retry_config or RetryConfig()
        self.secrets = secrets
        self.config = config or CompanionConfig()
        self._sleep = sleep
        self._providers: Dict[str, BaseModelProvider] = {}
        self._set_providers(providers)

    @classmethod
    def from_secret_store(
        cls,
        secrets: SecretStore,
        ledger: CostLedger,
        config: Optional[CompanionConfig] = None,
        completion_call: Optional[CompletionCall] = None,
    ) -> "ProviderRouter":
        cfg = config or CompanionConfig()
        return cls(
            build_providers(secrets, cfg, completion_call),
            ledger,
            retry_config=cfg.retry,
            secrets=secrets,
            config=cfg,
        )

    def _set_providers(self, providers: Dict[str, BaseModelProvider]) -> None:
        ordered = sorted(providers.items(), key=lambda kv: _precedence(kv[0]))
        self._providers = dict(ordered)

    @property
    def providers(self) -> Dict[str, BaseModelProvider]:
        return dict(self._providers)

    def refresh_providers(self, completion_call: Optional[CompletionCall] = None) -> None:
        """Rebuild providers from the secret store (e.g. after keys change)."""
        if self.secrets is None:
            logger.warning("No secret store configured; provider refresh skipped")
            return
        self._set_providers(build_providers(self.secrets, self.config, completion_call))

    def get_provider_status(self) -> List[ProviderStatus]:
        status: List[ProviderStatus] = []
        for name in PROVIDER_PRECEDENCE:
            configured = bool(self.secrets.get_api_key(name)) if self.secrets is not None else name in self._providers
            status.append(ProviderStatus(provider=name, configured=configured, models_available=name in self._providers))
        return status

    # =========================================================================
    # CATALOG
    # =========================================================================

    async def get_catalog(self, force_refresh: bool = False) -> List[ModelConfig]:
        models: List[ModelConfig] = []
        for name, provider in self._providers.items():
            try:
                models.extend(await provider.get_available_models(force_refresh=force_refresh))
            except Exception as e:
                logger.warning(f"Failed to get models from {name}: {e}")
        return sort_catalog(models)

    async def resolve_model(self, model_id: str) -> ModelConfig:
        catalog = await self.get_catalog()
        for model in catalog:
            if model.id == model_id:
                return model
        raise ModelNotFoundError(model_id, [m.id for m in catalog])

    # =========================================================================
    # SEND
    # =========================================================================

    async def send_message(
        self,
        messages: Sequence[ChatMessage],
        model_id: str,
        options: Optional[SendOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ModelResponse:
        await self.ledger.ensure_within_limit()

        model = await self.resolve_model(model_id)
        provider = self._providers.get(model.provider)
        if provider is None:
            raise RouterError(
                ERROR_CATALOG[ErrorCode.API_KEY_INVALID],
                context="router",
                user_message=f"Provider {model.provider} not available. Please check your API key configuration.",
            )

        response = await with_retry(
            lambda: provider.send_message(messages, model, options),
            f"{model.provider}:{model.id}",
            self.retry_config,
            cancel_token=cancel_token,
            sleep=self._sleep,
        )

        await self.ledger.record_cost(response.usage.total_cost)
        return response
