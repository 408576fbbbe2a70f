"""Storage and collaborator protocols for the sync pipeline."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Collection, Mapping
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from fastapi_erpsync.types import (
    AuditEntry,
    ConfirmationPayload,
    ConfirmationRecord,
    ErpResult,
    JobOutcome,
    SyncJob,
    SyncState,
    TransitionMetadata,
)

TerminalHook = Callable[[SyncJob, JobOutcome], Awaitable[None]]


@runtime_checkable
class ConfirmationStore(Protocol):
    """Durable home of confirmation records and their sync state."""

    async def create(
        self, payload: ConfirmationPayload | Mapping[str, Any]
    ) -> ConfirmationRecord: ...

    async def get(self, confirmation_id: str) -> ConfirmationRecord: ...

    async def transition(
        self,
        confirmation_id: str,
        from_state: SyncState,
        to_state: SyncState,
        metadata: TransitionMetadata | None = None,
        *,
        expected_attempts: int | None = None,
    ) -> ConfirmationRecord: ...

    async def list_pending(
        self, limit: int, *, exclude: Collection[str] = ()
    ) -> list[ConfirmationRecord]: ...

    async def resubmit(self, confirmation_id: str) -> ConfirmationRecord: ...

    async def set_suspended(
        self, confirmation_id: str, suspended: bool
    ) -> ConfirmationRecord: ...

    async def audit_log(self, confirmation_id: str) -> list[AuditEntry]: ...

    async def count_by_state(self) -> dict[SyncState, int]: ...


@runtime_checkable
class SyncJobQueue(Protocol):
    """Schedules sync jobs with at most one in flight per confirmation."""

    on_terminal: TerminalHook | None

    async def enqueue(
        self, confirmation_id: str, delay: float = 0, *, attempt: int = 0
    ) -> SyncJob: ...

    async def dequeue_due(
        self,
        now: datetime,
        max_batch: int,
        *,
        worker_id: str | None = None,
    ) -> list[SyncJob]: ...

    async def release(self, job: SyncJob, outcome: JobOutcome) -> None: ...

    async def cancel(self, confirmation_id: str) -> bool: ...

    async def in_flight_ids(self) -> set[str]: ...

    async def peek_depth(self) -> int: ...


@runtime_checkable
class ErpClient(Protocol):
    """Transport to the ERP. Credentials and wire format live behind it."""

    async def update_shipment_status(
        self,
        external_id: str,
        status: str,
        notes: str,
        *,
        idempotency_key: str,
    ) -> ErpResult: ...

    async def upload_attachment(
        self,
        external_id: str,
        blob: str,
        kind: str,
        *,
        idempotency_key: str,
    ) -> ErpResult: ...


@runtime_checkable
class BlobStorage(Protocol):
    """Resolves opaque signature/photo handles to bytes."""

    async def read(self, handle: str) -> bytes: ...


@runtime_checkable
class EventSink(Protocol):
    """Receives structured key-value pipeline events."""

    def emit(self, event: str, fields: Mapping[str, object]) -> None: ...
