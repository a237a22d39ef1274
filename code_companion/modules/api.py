"""
Code Companion - FastAPI surface for the UI layer

Thin HTTP wrapper around one RequestOrchestrator. Chat failures are not HTTP
errors: they come back as a normalized ``error`` payload so the UI can show
the user message and suggestion.

Endpoints:
- POST /api/chat         one chat turn
- GET  /api/models       aggregated model catalog
- GET  /api/cost         cost tracker snapshot
- POST /api/cost/reset   zero today's usage
- POST /api/cost/limit   change the daily limit
- GET  /api/stats        cache, context and cost statistics
- GET  /health           provider configuration check
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from .orchestrator import RequestOrchestrator
from .schemas import ChatMessage, CostTracker, ModelConfig, OrchestrationResult, SendOptions, TaskType


API_VERSION = "1.0.0"


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    model_id: Optional[str] = None
    task_type: TaskType = TaskType.GENERAL
    history: List[ChatMessage] = Field(default_factory=list)
    options: Optional[SendOptions] = None


class DailyLimitRequest(BaseModel):
    daily_limit: float = Field(ge=0.0)


def create_app(orchestrator: RequestOrchestrator) -> FastAPI:
    app = FastAPI(
        title="Code Companion API",
        description="Context-aware, cost-bounded chat routing across model providers",
        version=API_VERSION,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.state.orchestrator = orchestrator

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        providers = orchestrator.router.get_provider_status()
        any_available = any(p.models_available for p in providers)
        return {
            "name": "Code Companion API",
            "version": API_VERSION,
            "status": "healthy" if any_available else "degraded",
            "providers": {p.provider: {"configured": p.configured, "available": p.models_available} for p in providers},
            "cost_state": orchestrator.ledger.state.value,
        }

    @app.post("/api/chat", response_model=OrchestrationResult)
    async def chat(request: ChatRequest) -> OrchestrationResult:
        logger.info(f"Chat request: model={request.model_id or 'default'} task={request.task_type.value}")
        return await orchestrator.orchestrate(
            request.message,
            selected_model_id=request.model_id,
            task_type=request.task_type,
            history=request.history,
            options=request.options,
        )

    @app.get("/api/models", response_model=List[ModelConfig])
    async def models() -> List[ModelConfig]:
        return await orchestrator.get_catalog()

    @app.get("/api/cost", response_model=CostTracker)
    async def cost() -> CostTracker:
        return orchestrator.get_cost_snapshot()

    @app.post("/api/cost/reset", response_model=CostTracker)
    async def reset_cost() -> CostTracker:
        return await orchestrator.ledger.reset_daily_cost()

    @app.post("/api/cost/limit", response_model=CostTracker)
    async def set_limit(request: DailyLimitRequest) -> CostTracker:
        try:
            return await orchestrator.ledger.update_daily_limit(request.daily_limit)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/api/stats")
    async def stats() -> Dict[str, Any]:
        return orchestrator.get_stats()

    return app
