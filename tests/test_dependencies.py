"""Dependency injection tests."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

from fastapi_erpsync.config import ErpSyncConfig
from fastapi_erpsync.dependencies import get_config, get_orchestrator


def _make_request(**state_attrs):
    """Create a mock request with app.state attributes."""
    request = MagicMock()
    state = SimpleNamespace(**state_attrs)
    request.app.state = state
    return request


def test_get_config() -> None:
    config = ErpSyncConfig()
    request = _make_request(erpsync_config=config)

    assert get_config(request) is config


def test_get_orchestrator(orchestrator) -> None:
    request = _make_request(erpsync_orchestrator=orchestrator)

    assert get_orchestrator(request) is orchestrator
