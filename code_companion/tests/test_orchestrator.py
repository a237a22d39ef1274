from __future__ import annotations

from typing import Any, Dict, Optional

import pytest

from code_companion.modules.collaborators import Collaborators, InMemoryKeyValueStore
from code_companion.modules.config import CompanionConfig, ProviderSettings
from code_companion.modules.context import ContextAssembler, ContextChunkStore, ContextPrioritizer
from code_companion.modules.cost_ledger import CostLedger
from code_companion.modules.errors import CancellationToken
from code_companion.modules.orchestrator import CANCELLED_MESSAGE, RequestOrchestrator, build_orchestrator
from code_companion.modules.response_cache import ResponseCache
from code_companion.modules.router import ProviderRouter
from code_companion.modules.schemas import ChatMessage, RetryConfig, TaskType

from conftest import FakeClock, FakeProvider, RecordingSleep, StatusError, make_chunk, make_model, ok_response
from mocks import get_completion


class DictSecrets:
    def __init__(self, keys: Dict[str, str]):
        self.keys = keys

    def get_api_key(self, provider_name: str) -> Optional[str]:
        return self.keys.get(provider_name)


class CancellingProvider(FakeProvider):
    """Answers, but the user cancels while the answer is in flight."""

    def __init__(self, token: CancellationToken, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.token = token

    async def send_message(self, messages, model, options=None):
        self.token.cancel()
        return await super().send_message(messages, model, options)


DEEPSEEK = [make_model("deepseek-chat", name="DeepSeek Chat"), make_model("deepseek-coder", name="DeepSeek Coder")]


def _orchestrator(
    ledger: CostLedger,
    clock: FakeClock,
    *providers: FakeProvider,
    config: Optional[CompanionConfig] = None,
    store: Optional[ContextChunkStore] = None,
) -> RequestOrchestrator:
    cfg = config or CompanionConfig()
    router = ProviderRouter(
        {p.name: p for p in providers},
        ledger,
        retry_config=RetryConfig(max_retries=1),
        sleep=RecordingSleep(),
    )
    chunk_store = store or ContextChunkStore(clock=clock)
    assembler = ContextAssembler(chunk_store, ContextPrioritizer(clock=clock), settings=cfg.context, clock=clock)
    return RequestOrchestrator(router, assembler, ResponseCache(cfg.cache, clock=clock), ledger, cfg)


@pytest.mark.anyio
async def test_back_to_back_identical_requests_hit_cache(ledger: CostLedger, clock: FakeClock) -> None:
    provider = FakeProvider("deepseek", DEEPSEEK, outcomes=[ok_response(content="Use a set.", total_cost=0.0028)])
    orchestrator = _orchestrator(ledger, clock, provider)

    first = await orchestrator.orchestrate("how do I dedupe a list?", "deepseek-chat")
    second = await orchestrator.orchestrate("how do I dedupe a list?", "deepseek-chat")

    assert first.ok and second.ok
    assert first.cached is False
    assert second.cached is True
    assert second.content == first.content == "Use a set."
    assert second.usage.total_cost == first.usage.total_cost
    assert len(provider.calls) == 1
    assert ledger.snapshot().daily_usage == pytest.approx(0.0028)


@pytest.mark.anyio
async def test_context_is_sent_to_provider(ledger: CostLedger, clock: FakeClock) -> None:
    store = ContextChunkStore(clock=clock)
    store.add_chunk(make_chunk("def dedupe(xs):\n    return list(set(xs))", source="src/util.py", timestamp=clock()))
    provider = FakeProvider("deepseek", DEEPSEEK)
    orchestrator = _orchestrator(ledger, clock, provider, store=store)

    result = await orchestrator.orchestrate("is dedupe stable?", "deepseek-chat", task_type="coding")

    sent = provider.calls[0]["messages"]
    assert sent[0].role == "system"
    assert "src/util.py" in sent[0].content
    assert sent[-1].content == "is dedupe stable?"
    assert result.context_summary == "file: src/util.py"


@pytest.mark.anyio
async def test_history_is_kept_in_order(ledger: CostLedger, clock: FakeClock) -> None:
    provider = FakeProvider("deepseek", DEEPSEEK)
    orchestrator = _orchestrator(ledger, clock, provider)
    history = [
        ChatMessage(role="user", content="first"),
        ChatMessage(role="assistant", content="reply"),
    ]

    await orchestrator.orchestrate("second", "deepseek-chat", history=history)

    assert [m.content for m in provider.calls[0]["messages"]] == ["first", "reply", "second"]


@pytest.mark.anyio
async def test_default_model_used_when_none_selected(ledger: CostLedger, clock: FakeClock) -> None:
    provider = FakeProvider("deepseek", DEEPSEEK)
    orchestrator = _orchestrator(ledger, clock, provider)

    result = await orchestrator.orchestrate("hi")

    assert provider.calls[0]["model"] == "deepseek-chat"
    assert result.model == "deepseek-chat"


@pytest.mark.anyio
async def test_first_catalog_model_when_default_is_missing(ledger: CostLedger, clock: FakeClock) -> None:
    models = [make_model("z-model", provider="openrouter", name="Zed"), make_model("a-model", provider="openrouter", name="Alpha")]
    provider = FakeProvider("openrouter", models)
    config = CompanionConfig(providers=ProviderSettings(default_model="deepseek-chat"))
    orchestrator = _orchestrator(ledger, clock, provider, config=config)

    result = await orchestrator.orchestrate("hi")

    assert result.model == "a-model"


@pytest.mark.anyio
async def test_no_models_is_a_normalized_error(ledger: CostLedger, clock: FakeClock) -> None:
    orchestrator = _orchestrator(ledger, clock)

    result = await orchestrator.orchestrate("hi")

    assert not result.ok
    assert result.error["code"] == "MODEL_NOT_AVAILABLE"
    assert "No AI models available" in result.error_message


@pytest.mark.anyio
async def test_provider_failure_is_normalized(ledger: CostLedger, clock: FakeClock) -> None:
    provider = FakeProvider("deepseek", DEEPSEEK, outcomes=[StatusError("invalid token sk-live-abc", 401)])
    orchestrator = _orchestrator(ledger, clock, provider)

    result = await orchestrator.orchestrate("hi", "deepseek-chat")

    assert result.content == ""
    assert result.error["code"] == "API_KEY_INVALID"
    assert set(result.error) == {"user_message", "suggestion", "code", "context"}
    assert "\n\nSuggestion: " in result.error_message
    assert "sk-live-abc" not in result.error_message


@pytest.mark.anyio
async def test_unexpected_failure_is_wrapped(ledger: CostLedger, clock: FakeClock) -> None:
    orchestrator = _orchestrator(ledger, clock, FakeProvider("deepseek", DEEPSEEK))

    result = await orchestrator.orchestrate("hi", "deepseek-chat", task_type="poetry-slam")

    assert result.error["code"] == "UNKNOWN_ERROR"
    assert result.error["context"] == "orchestrator"


@pytest.mark.anyio
async def test_budget_exhaustion_is_reported(ledger: CostLedger, clock: FakeClock) -> None:
    await ledger.record_cost(5.0)
    provider = FakeProvider("deepseek", DEEPSEEK)
    orchestrator = _orchestrator(ledger, clock, provider)

    result = await orchestrator.orchestrate("hi", "deepseek-chat")

    assert result.error["code"] == "COST_LIMIT_EXCEEDED"
    assert provider.calls == []


@pytest.mark.anyio
async def test_cancelled_in_flight_result_is_not_cached(ledger: CostLedger, clock: FakeClock) -> None:
    token = CancellationToken()
    provider = CancellingProvider(token, "deepseek", DEEPSEEK)
    orchestrator = _orchestrator(ledger, clock, provider)

    result = await orchestrator.orchestrate("hi", "deepseek-chat", cancel_token=token)

    assert result.error_message == CANCELLED_MESSAGE
    assert result.error["code"] == "CANCELLED"
    assert len(orchestrator.cache) == 0


@pytest.mark.anyio
async def test_cancelled_before_send_never_calls_provider(ledger: CostLedger, clock: FakeClock) -> None:
    token = CancellationToken()
    token.cancel()
    provider = FakeProvider("deepseek", DEEPSEEK)
    orchestrator = _orchestrator(ledger, clock, provider)

    result = await orchestrator.orchestrate("hi", "deepseek-chat", cancel_token=token)

    assert result.error["code"] == "CANCELLED"
    assert provider.calls == []


@pytest.mark.anyio
async def test_stats_cover_every_service(ledger: CostLedger, clock: FakeClock) -> None:
    orchestrator = _orchestrator(ledger, clock, FakeProvider("deepseek", DEEPSEEK))
    await orchestrator.orchestrate("hi", "deepseek-chat")

    stats = orchestrator.get_stats()

    assert set(stats) == {"cache", "context", "cost", "providers"}
    assert stats["cache"]["size"] == 1
    assert stats["cost"]["state"] == "normal"


@pytest.mark.anyio
async def test_build_orchestrator_wires_real_services() -> None:
    calls = []

    async def completion(**kwargs):
        calls.append(kwargs)
        return get_completion("ok")

    kv = InMemoryKeyValueStore()
    orchestrator = build_orchestrator(
        CompanionConfig(),
        Collaborators(secrets=DictSecrets({"deepseek": "sk-test"}), kv_store=kv),
        completion_call=completion,
    )

    first = await orchestrator.orchestrate("why does my loop hang?")
    second = await orchestrator.orchestrate("why does my loop hang?")

    assert first.ok, first.error_message
    assert first.model == "deepseek-chat"
    assert first.usage.total_cost == pytest.approx(0.0028)
    assert second.cached is True
    assert len(calls) == 1
    assert calls[0]["model"] == "deepseek/deepseek-chat"
    assert kv.get("costTracker")["daily_usage"] == pytest.approx(0.0028)
    assert [m.id for m in await orchestrator.get_catalog()] == ["deepseek-chat", "deepseek-coder"]


def test_task_type_accepts_plain_strings() -> None:
    assert TaskType("coding") is TaskType.CODING
