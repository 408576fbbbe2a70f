"""Dependency providers for request handlers."""

from __future__ import annotations

from fastapi import Request

from fastapi_erpsync.config import ErpSyncConfig
from fastapi_erpsync.orchestrator import SyncOrchestrator


def get_config(request: Request) -> ErpSyncConfig:
    """Read config from FastAPI app state."""
    return request.app.state.erpsync_config


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Read the sync orchestrator from FastAPI app state."""
    return request.app.state.erpsync_orchestrator
