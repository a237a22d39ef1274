from __future__ import annotations

from typing import Dict, Optional

import pytest

from code_companion.modules.collaborators import InMemoryKeyValueStore
from code_companion.modules.cost_ledger import CostLedger
from code_companion.modules.errors import CompanionError, CostLimitExceededError
from code_companion.modules.providers import DeepSeekProvider, OpenRouterProvider
from code_companion.modules.router import (
    NO_MODELS_MESSAGE,
    ModelNotFoundError,
    ProviderRouter,
    RouterError,
    build_providers,
    sort_catalog,
)
from code_companion.modules.schemas import ChatMessage, ErrorCode, RetryConfig

from conftest import FakeProvider, RecordingSleep, StatusError, make_model, ok_response


class DictSecrets:
    def __init__(self, keys: Dict[str, str]):
        self.keys = keys

    def get_api_key(self, provider_name: str) -> Optional[str]:
        return self.keys.get(provider_name)


MESSAGES = [ChatMessage(role="user", content="hello")]

DEEPSEEK = [make_model("deepseek-coder", name="DeepSeek Coder"), make_model("deepseek-chat", name="DeepSeek Chat")]
OPENROUTER = [
    make_model("openai/gpt-4o-mini", provider="openrouter", name="OpenAI: GPT-4o-mini"),
    make_model("anthropic/claude-3.5-sonnet", provider="openrouter", name="anthropic: Claude 3.5 Sonnet"),
]


def _router(ledger: CostLedger, *providers: FakeProvider, sleep=None, retries: int = 3) -> ProviderRouter:
    return ProviderRouter(
        {p.name: p for p in providers},
        ledger,
        retry_config=RetryConfig(max_retries=retries),
        sleep=sleep or RecordingSleep(),
    )


# =============================================================================
# CATALOG
# =============================================================================


def test_sort_catalog_orders_by_precedence_then_name() -> None:
    ordered = sort_catalog(OPENROUTER + DEEPSEEK)
    assert [m.id for m in ordered] == [
        "deepseek-chat",
        "deepseek-coder",
        "anthropic/claude-3.5-sonnet",
        "openai/gpt-4o-mini",
    ]


@pytest.mark.anyio
async def test_catalog_aggregates_every_provider(ledger: CostLedger) -> None:
    router = _router(ledger, FakeProvider("openrouter", OPENROUTER), FakeProvider("deepseek", DEEPSEEK))

    catalog = await router.get_catalog()

    assert [m.provider for m in catalog] == ["deepseek", "deepseek", "openrouter", "openrouter"]
    assert list(router.providers) == ["deepseek", "openrouter"]


@pytest.mark.anyio
async def test_one_failing_catalog_does_not_hide_the_others(ledger: CostLedger) -> None:
    router = _router(
        ledger,
        FakeProvider("deepseek", DEEPSEEK),
        FakeProvider("openrouter", OPENROUTER, catalog_error=RuntimeError("502 from upstream")),
    )

    catalog = await router.get_catalog()

    assert {m.provider for m in catalog} == {"deepseek"}


@pytest.mark.anyio
async def test_unknown_model_lists_available_ids(ledger: CostLedger) -> None:
    router = _router(ledger, FakeProvider("deepseek", DEEPSEEK))

    with pytest.raises(ModelNotFoundError) as exc_info:
        await router.resolve_model("gpt-5")

    error = exc_info.value
    assert str(error) == 'Model "gpt-5" not found. Available models: deepseek-chat, deepseek-coder'
    assert error.code == ErrorCode.MODEL_NOT_AVAILABLE
    assert error.is_retryable is False


@pytest.mark.anyio
async def test_empty_catalog_explains_how_to_configure_keys(ledger: CostLedger) -> None:
    router = _router(ledger)

    with pytest.raises(ModelNotFoundError) as exc_info:
        await router.resolve_model("deepseek-chat")

    assert str(exc_info.value) == NO_MODELS_MESSAGE
    assert "DEEPSEEK_API_KEY" in NO_MODELS_MESSAGE


# =============================================================================
# SEND
# =============================================================================


@pytest.mark.anyio
async def test_send_routes_to_owning_provider_and_records_cost(ledger: CostLedger) -> None:
    deepseek = FakeProvider("deepseek", DEEPSEEK)
    openrouter = FakeProvider(
        "openrouter", OPENROUTER, outcomes=[ok_response("openai/gpt-4o-mini", total_cost=0.25, provider="openrouter")]
    )
    router = _router(ledger, deepseek, openrouter)

    response = await router.send_message(MESSAGES, "openai/gpt-4o-mini")

    assert response.provider == "openrouter"
    assert deepseek.calls == []
    assert openrouter.calls[0]["model"] == "openai/gpt-4o-mini"
    snapshot = ledger.snapshot()
    assert snapshot.daily_usage == pytest.approx(0.25)
    assert snapshot.total_usage == pytest.approx(0.25)


@pytest.mark.anyio
async def test_budget_blocks_next_request_without_touching_provider(kv_store: InMemoryKeyValueStore) -> None:
    ledger = CostLedger(store=kv_store)
    await ledger.record_cost(4.50)
    provider = FakeProvider("deepseek", DEEPSEEK, outcomes=[ok_response(total_cost=0.60)])
    router = _router(ledger, provider)

    await router.send_message(MESSAGES, "deepseek-chat")
    assert ledger.snapshot().daily_usage == pytest.approx(5.10)

    with pytest.raises(CostLimitExceededError):
        await router.send_message(MESSAGES, "deepseek-chat")

    assert len(provider.calls) == 1


@pytest.mark.anyio
async def test_transient_failures_are_retried_with_context_label(ledger: CostLedger) -> None:
    sleep = RecordingSleep()
    provider = FakeProvider("deepseek", DEEPSEEK, outcomes=[StatusError("busy", 503), ok_response()])
    router = _router(ledger, provider, sleep=sleep)

    response = await router.send_message(MESSAGES, "deepseek-chat")

    assert response.content == "ok"
    assert len(provider.calls) == 2
    assert sleep.delays == [1.0]


@pytest.mark.anyio
async def test_exhausted_retries_surface_classified_error(ledger: CostLedger) -> None:
    provider = FakeProvider("deepseek", DEEPSEEK, outcomes=[StatusError("slow down", 429)])
    router = _router(ledger, provider, retries=2)

    with pytest.raises(CompanionError) as exc_info:
        await router.send_message(MESSAGES, "deepseek-chat")

    assert len(provider.calls) == 3
    assert exc_info.value.code == ErrorCode.RATE_LIMIT_EXCEEDED
    assert exc_info.value.context == "deepseek:deepseek-chat"
    assert ledger.snapshot().daily_usage == 0.0


@pytest.mark.anyio
async def test_missing_owner_provider_is_reported(ledger: CostLedger) -> None:
    # Catalog entry claims a provider the router does not have.
    stray = FakeProvider("deepseek", [make_model("ghost", provider="openrouter")])
    router = _router(ledger, stray)

    with pytest.raises(RouterError) as exc_info:
        await router.send_message(MESSAGES, "ghost")

    assert exc_info.value.code == ErrorCode.API_KEY_INVALID
    assert "openrouter" in str(exc_info.value)


# =============================================================================
# PROVIDERS FROM SECRETS
# =============================================================================


def test_build_providers_skips_missing_keys() -> None:
    providers = build_providers(DictSecrets({"deepseek": "sk-1"}))
    assert list(providers) == ["deepseek"]
    assert isinstance(providers["deepseek"], DeepSeekProvider)

    both = build_providers(DictSecrets({"deepseek": "sk-1", "openrouter": "or-1"}))
    assert isinstance(both["openrouter"], OpenRouterProvider)


def test_provider_status_and_refresh(ledger: CostLedger) -> None:
    secrets = DictSecrets({"deepseek": "sk-1"})
    router = ProviderRouter.from_secret_store(secrets, ledger)

    status = {s.provider: s for s in router.get_provider_status()}
    assert status["deepseek"].configured and status["deepseek"].models_available
    assert not status["openrouter"].configured

    secrets.keys["openrouter"] = "or-1"
    router.refresh_providers()

    assert list(router.providers) == ["deepseek", "openrouter"]
    assert all(s.models_available for s in router.get_provider_status())
