"""ERP sync and retry pipeline for delivery confirmations."""

from typing import TYPE_CHECKING

__version__ = "0.1.0"

__all__ = [
    "ConfirmationStore",
    "ErpAdapter",
    "ErpClient",
    "ErpSyncConfig",
    "ErpSyncError",
    "InMemoryConfirmationStore",
    "InMemorySyncJobQueue",
    "SyncCircuitBreaker",
    "SyncJobQueue",
    "SyncOrchestrator",
    "__version__",
    "create_sync_router",
    "register_exception_handlers",
]

if TYPE_CHECKING:
    from fastapi_erpsync.adapter import ErpAdapter
    from fastapi_erpsync.circuit import SyncCircuitBreaker
    from fastapi_erpsync.config import ErpSyncConfig
    from fastapi_erpsync.exceptions import (
        ErpSyncError,
        register_exception_handlers,
    )
    from fastapi_erpsync.memory import (
        InMemoryConfirmationStore,
        InMemorySyncJobQueue,
    )
    from fastapi_erpsync.orchestrator import SyncOrchestrator
    from fastapi_erpsync.protocols import (
        ConfirmationStore,
        ErpClient,
        SyncJobQueue,
    )
    from fastapi_erpsync.router import create_sync_router


def __getattr__(name: str):
    # Lazy imports to avoid loading all submodules on package import.
    if name == "ErpSyncConfig":
        from fastapi_erpsync.config import ErpSyncConfig

        return ErpSyncConfig
    if name == "create_sync_router":
        from fastapi_erpsync.router import create_sync_router

        return create_sync_router
    if name == "SyncOrchestrator":
        from fastapi_erpsync.orchestrator import SyncOrchestrator

        return SyncOrchestrator
    if name == "ErpAdapter":
        from fastapi_erpsync.adapter import ErpAdapter

        return ErpAdapter
    if name == "SyncCircuitBreaker":
        from fastapi_erpsync.circuit import SyncCircuitBreaker

        return SyncCircuitBreaker
    if name in ("InMemoryConfirmationStore", "InMemorySyncJobQueue"):
        from fastapi_erpsync import memory

        return getattr(memory, name)
    if name in ("ErpSyncError", "register_exception_handlers"):
        from fastapi_erpsync import exceptions

        return getattr(exceptions, name)
    if name in ("ConfirmationStore", "ErpClient", "SyncJobQueue"):
        from fastapi_erpsync import protocols

        return getattr(protocols, name)
    raise AttributeError(
        f"module 'fastapi_erpsync' has no attribute {name!r}"
    )
