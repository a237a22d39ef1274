"""
Request Orchestrator.

Top-level composition invoked once per chat turn:

    resolve model -> assemble context -> cache lookup -> route -> cache write

Services are built explicitly by ``build_orchestrator`` and owned by the
orchestrator instance; nothing here is a module-level singleton.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger

from .collaborators import Collaborators, InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore
from .config import CompanionConfig
from .context import ContextAssembler, ContextChunkStore, ContextGatherer, ContextPrioritizer
from .cost_ledger import CostLedger, NoticeCallback
from .errors import CancellationToken, CompanionError, RequestCancelled, wrap_error
from .providers.base import CompletionCall
from .response_cache import ResponseCache
from .router import ModelNotFoundError, ProviderRouter
from .schemas import ChatMessage, CostTracker, ModelConfig, OrchestrationResult, SendOptions, TaskType


CANCELLED_MESSAGE = "Request cancelled."


class RequestOrchestrator:
    """
    Usage:
        orchestrator = build_orchestrator(config, Collaborators(secrets=EnvSecretStore()))
        result = await orchestrator.orchestrate("Why does this test fail?", task_type="coding")
    """

    def __init__(
        self,
        router: ProviderRouter,
        assembler: ContextAssembler,
        cache: ResponseCache,
        ledger: CostLedger,
        config: Optional[CompanionConfig] = None,
    ):
        self.router = router
        self.assembler = assembler
        self.cache = cache
        self.ledger = ledger
        self.config = config or CompanionConfig()

    async def _resolve_model(self, selected_model_id: Optional[str]) -> ModelConfig:
        if selected_model_id:
            return await self.router.resolve_model(selected_model_id)

        catalog = await self.router.get_catalog()
        default_id = self.config.providers.default_model
        for model in catalog:
            if model.id == default_id:
                return model
        if catalog:
            logger.info(f"Default model {default_id!r} not in catalog, using {catalog[0].id}")
            return catalog[0]
        raise ModelNotFoundError(default_id or "", [])

    async def orchestrate(
        self,
        user_message: str,
        selected_model_id: Optional[str] = None,
        task_type: Union[TaskType, str] = TaskType.GENERAL,
        history: Sequence[ChatMessage] = (),
        cancel_token: Optional[CancellationToken] = None,
        options: Optional[SendOptions] = None,
    ) -> OrchestrationResult:
        """Run one chat turn. Failures come back as ``error_message``, never raised."""
        model_id = selected_model_id
        try:
            task = TaskType(task_type)
            model = await self._resolve_model(selected_model_id)
            model_id = model.id

            messages: List[ChatMessage] = list(history)
            messages.append(ChatMessage(role="user", content=user_message, timestamp=datetime.now()))

            assembled = await self.assembler.optimize(messages, model, task)
            key = self.cache.key_for(assembled.optimized_messages, model.id, options)

            response = await self.cache.fetch(
                key,
                lambda: self.router.send_message(assembled.optimized_messages, model.id, options, cancel_token),
                cancel_token=cancel_token,
            )

            logger.info(
                f"Turn complete: model={response.model} cached={response.cached} "
                f"cost=${response.usage.total_cost:.6f}"
            )
            return OrchestrationResult(
                content=response.content,
                usage=response.usage,
                model=response.model,
                cached=response.cached,
                context_summary=assembled.context_summary,
            )

        except RequestCancelled as e:
            logger.info(f"Turn cancelled ({e.context or 'orchestrator'})")
            return OrchestrationResult(
                model=model_id,
                error_message=CANCELLED_MESSAGE,
                error={"user_message": CANCELLED_MESSAGE, "suggestion": "", "code": "CANCELLED", "context": e.context},
            )
        except CompanionError as e:
            logger.warning(f"Turn failed [{e.code.value}] {e.context}: {e.original or e}")
            return self._error_result(e, model_id)
        except Exception as e:
            logger.exception(f"Unexpected error during orchestration: {e}")
            return self._error_result(wrap_error(e, "orchestrator"), model_id)

    @staticmethod
    def _error_result(error: CompanionError, model_id: Optional[str]) -> OrchestrationResult:
        return OrchestrationResult(model=model_id, error_message=error.format_for_user(), error=error.to_dict())

    # =========================================================================
    # READ-ONLY SURFACES
    # =========================================================================

    def get_cost_snapshot(self) -> CostTracker:
        return self.ledger.snapshot()

    async def get_catalog(self) -> List[ModelConfig]:
        return await self.router.get_catalog()

    def get_stats(self) -> Dict[str, Any]:
        cache_stats = self.cache.get_cache_stats()
        return {
            "cache": {
                "size": cache_stats["size"],
                "max_size": cache_stats["max_size"],
                "hit_rate": cache_stats["hit_rate"],
                **self.cache.get_metrics(),
            },
            "context": self.assembler.store.get_stats(),
            "cost": {
                **self.ledger.snapshot().model_dump(mode="json"),
                "state": self.ledger.state.value,
            },
            "providers": [s.__dict__ for s in self.router.get_provider_status()],
        }


def _kv_store(config: CompanionConfig, collaborators: Collaborators) -> KeyValueStore:
    if collaborators.kv_store is not None:
        return collaborators.kv_store
    if config.cost.state_file:
        return JsonFileKeyValueStore(Path(config.cost.state_file).expanduser())
    return InMemoryKeyValueStore()


def build_orchestrator(
    config: CompanionConfig,
    collaborators: Collaborators,
    completion_call: Optional[CompletionCall] = None,
    on_notice: Optional[NoticeCallback] = None,
) -> RequestOrchestrator:
    """Wire every service for one hosting session."""
    ctx = config.context
    store = ContextChunkStore(
        max_chunks=ctx.max_chunks,
        max_age_seconds=ctx.max_chunk_age_seconds,
        similarity_threshold=ctx.similarity_threshold,
    )
    gatherer = ContextGatherer(
        store,
        editor=collaborators.editor,
        workspace=collaborators.workspace,
        diagnostics=collaborators.diagnostics,
        settings=ctx,
    )
    assembler = ContextAssembler(
        store,
        ContextPrioritizer(prioritize_recent=ctx.prioritize_recent),
        gatherer=gatherer,
        settings=ctx,
    )

    ledger = CostLedger(store=_kv_store(config, collaborators), settings=config.cost, on_notice=on_notice)
    router = ProviderRouter.from_secret_store(collaborators.secrets, ledger, config, completion_call)
    cache = ResponseCache(config.cache)

    return RequestOrchestrator(router, assembler, cache, ledger, config)
