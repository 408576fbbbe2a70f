"""Sync pipeline status endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from fastapi_erpsync.dependencies import get_orchestrator
from fastapi_erpsync.orchestrator import SyncOrchestrator
from fastapi_erpsync.schemas import SyncStatsResponse

router = APIRouter()


@router.get("/sync/health")
async def sync_health(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, str]:
    """Healthcheck; reports the ERP circuit state."""
    return {
        "status": "ok",
        "circuit": orchestrator.breaker.state().value,
    }


@router.get("/sync/stats", response_model=SyncStatsResponse)
async def sync_stats(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncStatsResponse:
    """Sync totals, success rate and queue depth."""
    return SyncStatsResponse.model_validate(await orchestrator.stats())
