"""Router factory for fastapi-erpsync."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI

from fastapi_erpsync.config import ErpSyncConfig
from fastapi_erpsync.exceptions import register_exception_handlers
from fastapi_erpsync.orchestrator import SyncOrchestrator
from fastapi_erpsync.routes.confirmations import router as confirmations_router
from fastapi_erpsync.routes.sync import router as sync_router


def create_sync_router(
    *,
    orchestrator: SyncOrchestrator,
    config: ErpSyncConfig | None = None,
) -> APIRouter:
    """Create a configured API router."""
    actual_config = config or orchestrator.config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        app.state.erpsync_config = actual_config
        app.state.erpsync_orchestrator = orchestrator
        register_exception_handlers(app)
        yield

    router = APIRouter(lifespan=lifespan)
    router.include_router(confirmations_router)
    router.include_router(sync_router)
    return router
