"""In-process store and queue for tests and single-process deployments.

Each structure is guarded by an ``asyncio.Lock``, which makes claim and
compare-and-swap atomic within one event loop. Multi-process deployments
need the SQLAlchemy backends instead.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Collection, Mapping
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from fastapi_erpsync.exceptions import (
    ConfirmationNotFoundError,
    DuplicateJobError,
    InvalidTransitionError,
    JobClaimLostError,
    StaleStateError,
)
from fastapi_erpsync.protocols import TerminalHook
from fastapi_erpsync.types import (
    ALLOWED_TRANSITIONS,
    INGESTION_ACTOR,
    OPERATOR_ACTOR,
    AuditEntry,
    ConfirmationPayload,
    ConfirmationRecord,
    JobOutcome,
    JobOutcomeKind,
    JobState,
    SyncJob,
    SyncState,
    TransitionMetadata,
    compute_verification_hash,
    parse_payload,
    utcnow,
)

logger = logging.getLogger(__name__)


def apply_transition(
    record: ConfirmationRecord,
    to_state: SyncState,
    metadata: TransitionMetadata,
    now: datetime,
) -> ConfirmationRecord:
    """Return ``record`` moved to ``to_state`` with its side fields set."""
    changes: dict[str, Any] = {"sync_state": to_state}
    if to_state is SyncState.IN_FLIGHT:
        changes["sync_attempts"] = record.sync_attempts + 1
        changes["last_attempt_at"] = now
    elif to_state is SyncState.SYNCED:
        changes["synced_at"] = now
        changes["last_error"] = None
    elif metadata.error is not None:
        changes["last_error"] = metadata.error
    if metadata.progress is not None:
        merged = list(record.uploaded_attachments)
        for key in metadata.progress.uploaded_attachments:
            if key not in merged:
                merged.append(key)
        changes["erp_status_synced"] = (
            record.erp_status_synced or metadata.progress.erp_status_synced
        )
        changes["uploaded_attachments"] = tuple(merged)
    return replace(record, **changes)


def check_attempts(
    record: ConfirmationRecord, expected_attempts: int | None
) -> None:
    """Fence a transition on the attempt counter the caller last saw.

    A worker whose claim was taken over sees the same sync state as the
    new owner but an older attempt count, so its late outcome is refused.
    """
    if expected_attempts is None:
        return
    if record.sync_attempts != expected_attempts:
        raise StaleStateError(
            f"Confirmation {record.id} is at attempt {record.sync_attempts},"
            f" expected {expected_attempts}"
        )


class InMemoryConfirmationStore:
    """Confirmation records kept in a dict, audit log in a list."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self.records: dict[str, ConfirmationRecord] = {}
        self.audit: list[AuditEntry] = []

    def _require(self, confirmation_id: str) -> ConfirmationRecord:
        try:
            return self.records[confirmation_id]
        except KeyError as exc:
            raise ConfirmationNotFoundError(confirmation_id) from exc

    def _audit(
        self,
        confirmation_id: str,
        from_state: SyncState | None,
        to_state: SyncState,
        actor: str,
        detail: str | None,
        now: datetime,
    ) -> None:
        self.audit.append(
            AuditEntry(
                confirmation_id=confirmation_id,
                from_state=from_state,
                to_state=to_state,
                occurred_at=now,
                actor=actor,
                detail=detail,
            )
        )

    async def create(
        self, payload: ConfirmationPayload | Mapping[str, Any]
    ) -> ConfirmationRecord:
        parsed = parse_payload(payload)
        now = self._clock()
        record = ConfirmationRecord(
            id=str(uuid.uuid4()),
            payload=parsed,
            verification_hash=compute_verification_hash(parsed),
            created_at=now,
        )
        async with self._lock:
            self.records[record.id] = record
            self._audit(
                record.id,
                None,
                SyncState.PENDING,
                INGESTION_ACTOR,
                None,
                now,
            )
        return record

    async def get(self, confirmation_id: str) -> ConfirmationRecord:
        return self._require(confirmation_id)

    async def transition(
        self,
        confirmation_id: str,
        from_state: SyncState,
        to_state: SyncState,
        metadata: TransitionMetadata | None = None,
        *,
        expected_attempts: int | None = None,
    ) -> ConfirmationRecord:
        if (from_state, to_state) not in ALLOWED_TRANSITIONS:
            raise InvalidTransitionError(
                f"Transition {from_state} -> {to_state} is not allowed"
            )
        metadata = metadata or TransitionMetadata()
        async with self._lock:
            record = self._require(confirmation_id)
            if record.sync_state is not from_state:
                raise StaleStateError(
                    f"Confirmation {confirmation_id} is {record.sync_state},"
                    f" expected {from_state}"
                )
            check_attempts(record, expected_attempts)
            now = self._clock()
            updated = apply_transition(record, to_state, metadata, now)
            self.records[confirmation_id] = updated
            self._audit(
                confirmation_id,
                from_state,
                to_state,
                metadata.actor,
                metadata.error,
                now,
            )
        return updated

    async def list_pending(
        self, limit: int, *, exclude: Collection[str] = ()
    ) -> list[ConfirmationRecord]:
        excluded = set(exclude)
        pending = [
            record
            for record in self.records.values()
            if record.sync_state is SyncState.PENDING
            and not record.suspended
            and record.id not in excluded
        ]
        pending.sort(key=lambda record: (record.captured_at, record.id))
        return pending[: max(0, limit)]

    async def resubmit(self, confirmation_id: str) -> ConfirmationRecord:
        async with self._lock:
            record = self._require(confirmation_id)
            if record.sync_state is not SyncState.FAILED:
                raise StaleStateError(
                    f"Only failed confirmations can be resubmitted;"
                    f" {confirmation_id} is {record.sync_state}"
                )
            now = self._clock()
            updated = replace(
                record,
                sync_state=SyncState.PENDING,
                sync_attempts=0,
                last_error=None,
            )
            self.records[confirmation_id] = updated
            self._audit(
                confirmation_id,
                SyncState.FAILED,
                SyncState.PENDING,
                OPERATOR_ACTOR,
                "resubmitted",
                now,
            )
        return updated

    async def set_suspended(
        self, confirmation_id: str, suspended: bool
    ) -> ConfirmationRecord:
        async with self._lock:
            record = self._require(confirmation_id)
            updated = replace(record, suspended=bool(suspended))
            self.records[confirmation_id] = updated
        return updated

    async def audit_log(self, confirmation_id: str) -> list[AuditEntry]:
        self._require(confirmation_id)
        return [
            entry
            for entry in self.audit
            if entry.confirmation_id == confirmation_id
        ]

    async def count_by_state(self) -> dict[SyncState, int]:
        counts = {state: 0 for state in SyncState}
        for record in self.records.values():
            counts[record.sync_state] += 1
        return counts


class InMemorySyncJobQueue:
    """Job table indexed by confirmation id."""

    def __init__(
        self,
        *,
        lease_seconds: float = 300,
        on_terminal: TerminalHook | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.lease = timedelta(seconds=lease_seconds)
        self.on_terminal = on_terminal
        self._clock = clock
        self._lock = asyncio.Lock()
        self.jobs: dict[str, SyncJob] = {}

    def _claimable(self, job: SyncJob, now: datetime) -> bool:
        if job.state is JobState.PENDING:
            return job.scheduled_at <= now
        return job.lease_expires_at is not None and job.lease_expires_at <= now

    async def enqueue(
        self, confirmation_id: str, delay: float = 0, *, attempt: int = 0
    ) -> SyncJob:
        async with self._lock:
            now = self._clock()
            scheduled_at = now + timedelta(seconds=max(0.0, float(delay)))
            existing = self.jobs.get(confirmation_id)
            if existing is not None:
                if existing.state is JobState.IN_FLIGHT:
                    raise DuplicateJobError(
                        f"Job for {confirmation_id} is in flight"
                    )
                if existing.scheduled_at <= scheduled_at:
                    raise DuplicateJobError(
                        f"Job for {confirmation_id} already scheduled at"
                        f" {existing.scheduled_at.isoformat()}"
                    )
                job = replace(existing, scheduled_at=scheduled_at)
            else:
                job = SyncJob(
                    id=str(uuid.uuid4()),
                    confirmation_id=confirmation_id,
                    scheduled_at=scheduled_at,
                    attempt=attempt,
                )
            self.jobs[confirmation_id] = job
        return job

    async def dequeue_due(
        self,
        now: datetime,
        max_batch: int,
        *,
        worker_id: str | None = None,
    ) -> list[SyncJob]:
        claimed: list[SyncJob] = []
        async with self._lock:
            due = sorted(
                (
                    job
                    for job in self.jobs.values()
                    if self._claimable(job, now)
                ),
                key=lambda job: (job.scheduled_at, job.id),
            )
            for job in due[: max(0, max_batch)]:
                if job.state is JobState.IN_FLIGHT:
                    logger.warning(
                        "Reclaiming job %s for %s after lease expiry",
                        job.id,
                        job.confirmation_id,
                    )
                claimed_job = replace(
                    job,
                    state=JobState.IN_FLIGHT,
                    claim_token=uuid.uuid4().hex,
                    claimed_by=worker_id,
                    claimed_at=now,
                    lease_expires_at=now + self.lease,
                )
                self.jobs[job.confirmation_id] = claimed_job
                claimed.append(claimed_job)
        return claimed

    def _owned(self, job: SyncJob) -> SyncJob:
        current = self.jobs.get(job.confirmation_id)
        if (
            current is None
            or current.id != job.id
            or current.state is not JobState.IN_FLIGHT
            or current.claim_token != job.claim_token
        ):
            raise JobClaimLostError(
                f"Claim on job {job.id} for {job.confirmation_id} was lost"
            )
        return current

    async def release(self, job: SyncJob, outcome: JobOutcome) -> None:
        if outcome.kind is JobOutcomeKind.TERMINAL and self.on_terminal:
            # the job stays claimed until the hook has returned
            self._owned(job)
            await self.on_terminal(job, outcome)
        async with self._lock:
            current = self._owned(job)
            if outcome.kind is JobOutcomeKind.RETRY:
                self.jobs[job.confirmation_id] = replace(
                    current,
                    state=JobState.PENDING,
                    scheduled_at=self._clock()
                    + timedelta(seconds=outcome.delay),
                    attempt=current.attempt + 1,
                    claim_token=None,
                    claimed_by=None,
                    claimed_at=None,
                    lease_expires_at=None,
                )
                return
            del self.jobs[job.confirmation_id]

    async def cancel(self, confirmation_id: str) -> bool:
        async with self._lock:
            job = self.jobs.get(confirmation_id)
            if job is None or job.state is not JobState.PENDING:
                return False
            del self.jobs[confirmation_id]
            return True

    async def in_flight_ids(self) -> set[str]:
        return {
            job.confirmation_id
            for job in self.jobs.values()
            if job.state is JobState.IN_FLIGHT
        }

    async def peek_depth(self) -> int:
        return len(self.jobs)
