# Pytest configuration for the Code Companion test suite
#
# Timeout strategy:
# - FAST tests: 10s (pure unit tests, no I/O)
# - MEDIUM tests: 30s (file I/O, mocked HTTP, TestClient)

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import pytest

from code_companion.modules.collaborators import InMemoryKeyValueStore
from code_companion.modules.cost_ledger import CostLedger
from code_companion.modules.providers.base import BaseModelProvider
from code_companion.modules.schemas import (
    ChatMessage,
    ChunkType,
    ContextChunk,
    ModelConfig,
    ModelResponse,
    SendOptions,
    TokenPricing,
    Usage,
)
from code_companion.modules.tokens import estimate_tokens

# ---------------------------------------------------------------------------
# Timeout configuration by test file
# ---------------------------------------------------------------------------

TIMEOUT_MAP = {
    # MEDIUM tests (30s) - File I/O, mocked HTTP, TestClient
    "test_api": 30,
    "test_cli": 30,
    "test_collaborators": 30,
    "test_config": 30,
    "test_providers": 30,
    "test_orchestrator": 30,

    # FAST tests (10s) - Pure unit tests
    "test_tokens": 10,
    "test_chunk_store": 10,
    "test_gatherer": 10,
    "test_prioritizer": 10,
    "test_assembler": 10,
    "test_response_cache": 10,
    "test_errors": 10,
    "test_router": 10,
    "test_cost_ledger": 10,
}


def pytest_collection_modifyitems(config, items):
    """Apply timeout markers based on test file names."""
    for item in items:
        test_file = item.fspath.basename if hasattr(item.fspath, "basename") else str(item.fspath).split("/")[-1]
        test_name = test_file.replace(".py", "")

        timeout = 30  # default
        for pattern, t in TIMEOUT_MAP.items():
            if pattern in test_name:
                timeout = t
                break

        if item.get_closest_marker("timeout") is None:
            item.add_marker(pytest.mark.timeout(timeout))


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Epoch-seconds clock the test advances by hand."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """datetime clock for the cost ledger."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_model(
    model_id: str,
    provider: str = "deepseek",
    name: Optional[str] = None,
    max_tokens: int = 4096,
    input_cost: float = 0.0014,
    output_cost: float = 0.0028,
) -> ModelConfig:
    return ModelConfig(
        id=model_id,
        name=name or model_id,
        provider=provider,
        max_tokens=max_tokens,
        cost_per_1k_tokens=TokenPricing(input=input_cost, output=output_cost),
        capabilities=["chat"],
    )


def make_chunk(
    content: str,
    chunk_type: ChunkType = ChunkType.FILE,
    source: str = "src/app.py",
    timestamp: float = 1_700_000_000.0,
    priority: int = 75,
) -> ContextChunk:
    return ContextChunk(
        content=content,
        type=chunk_type,
        priority=priority,
        timestamp=timestamp,
        token_count=estimate_tokens(content),
        source=source,
    )


Outcome = Union[ModelResponse, BaseException]


class FakeProvider(BaseModelProvider):
    """Provider with a fixed catalog and a scripted list of outcomes.

    The last outcome repeats once the script runs out.
    """

    display_name = "Fake"

    def __init__(
        self,
        name: str,
        models: Sequence[ModelConfig],
        outcomes: Sequence[Outcome] = (),
        catalog_error: Optional[BaseException] = None,
    ):
        super().__init__(api_key="test-key")
        self.name = name
        self.models = list(models)
        self.outcomes = list(outcomes)
        self.catalog_error = catalog_error
        self.calls: List[Dict[str, Any]] = []

    async def get_available_models(self, force_refresh: bool = False) -> List[ModelConfig]:
        if self.catalog_error is not None:
            raise self.catalog_error
        return list(self.models)

    def litellm_model(self, model: ModelConfig) -> str:
        return f"{self.name}/{model.id}"

    def default_max_tokens(self, model: ModelConfig) -> int:
        return model.max_tokens

    async def send_message(
        self,
        messages: Sequence[ChatMessage],
        model: ModelConfig,
        options: Optional[SendOptions] = None,
    ) -> ModelResponse:
        self.calls.append({"messages": list(messages), "model": model.id, "options": options})
        if self.outcomes:
            outcome = self.outcomes[min(len(self.calls) - 1, len(self.outcomes) - 1)]
        else:
            outcome = ok_response(model.id, provider=self.name)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def ok_response(
    model_id: str = "deepseek-chat",
    content: str = "ok",
    total_cost: float = 0.01,
    provider: str = "deepseek",
) -> ModelResponse:
    return ModelResponse(
        content=content,
        usage=Usage(input_tokens=100, output_tokens=50, total_cost=total_cost),
        model=model_id,
        provider=provider,
    )


class StatusError(Exception):
    """Exception carrying an HTTP-style status code."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def ledger(kv_store: InMemoryKeyValueStore) -> CostLedger:
    return CostLedger(store=kv_store)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
