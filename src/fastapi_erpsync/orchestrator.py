"""Sync orchestrator tying store, queue, adapter and retry policy together."""

from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from fastapi_erpsync.adapter import ErpAdapter
from fastapi_erpsync.circuit import CircuitState, SyncCircuitBreaker
from fastapi_erpsync.config import ErpSyncConfig
from fastapi_erpsync.events import LoggingEventSink
from fastapi_erpsync.exceptions import (
    ConfirmationNotFoundError,
    ConfirmationSuspendedError,
    DuplicateJobError,
    ErpError,
    JobClaimLostError,
    StaleStateError,
    TransientError,
    VerificationHashMismatchError,
)
from fastapi_erpsync.protocols import (
    ConfirmationStore,
    EventSink,
    SyncJobQueue,
)
from fastapi_erpsync.retry import (
    DecisionKind,
    RetryPolicy,
    classify_error,
    decide,
)
from fastapi_erpsync.types import (
    OPERATOR_ACTOR,
    ConfirmationPayload,
    ConfirmationRecord,
    JobOutcome,
    SyncJob,
    SyncProgress,
    SyncState,
    TransitionMetadata,
    utcnow,
)

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
RETRIED = "retried"
FAILED = "failed"
DISCARDED = "discarded"
ERRORS = "errors"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


@dataclass
class CycleReport:
    """Counts of what one dispatch cycle did."""

    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    discarded: int = 0
    errors: int = 0
    skipped: bool = False
    circuit_state: str = CircuitState.CLOSED.value

    def count(self, result: str) -> None:
        setattr(self, result, getattr(self, result) + 1)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TerminalContext:
    """What the terminal hook needs to move a record to Failed."""

    metadata: TransitionMetadata
    attempts: int


class SyncOrchestrator:
    """Dispatch due sync jobs to the ERP and apply the retry decisions.

    Several orchestrators, in one process or many, may share a store and a
    queue: the queue's claim is the only mutual exclusion point, and every
    record change is a compare-and-swap on its sync state.
    """

    def __init__(
        self,
        store: ConfirmationStore,
        queue: SyncJobQueue,
        adapter: ErpAdapter,
        *,
        config: ErpSyncConfig | None = None,
        breaker: SyncCircuitBreaker | None = None,
        events: EventSink | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.adapter = adapter
        self.config = config or ErpSyncConfig()
        self.policy = RetryPolicy.from_config(self.config)
        self.events = events or LoggingEventSink()
        self.breaker = breaker or SyncCircuitBreaker.from_config(
            self.config, events=self.events, clock=clock
        )
        self.worker_id = worker_id or default_worker_id()
        self._clock = clock
        self._rng = rng
        self._wake = asyncio.Event()
        self.queue.on_terminal = self._mark_failed

    def _emit(self, event: str, **fields: object) -> None:
        self.events.emit(event, fields)

    async def _transition(
        self,
        record: ConfirmationRecord,
        to_state: SyncState,
        metadata: TransitionMetadata | None = None,
    ) -> ConfirmationRecord:
        updated = await self.store.transition(
            record.id,
            record.sync_state,
            to_state,
            metadata,
            expected_attempts=record.sync_attempts,
        )
        self._emit(
            "state_transition",
            confirmation_id=record.id,
            from_state=record.sync_state,
            to_state=to_state,
            attempts=updated.sync_attempts,
        )
        return updated

    async def _mark_failed(self, job: SyncJob, outcome: JobOutcome) -> None:
        """Terminal hook of the queue; runs while the job is still claimed.

        Errors propagate so the queue keeps the job and its lease.
        """
        context = outcome.context
        if isinstance(context, TerminalContext):
            metadata = context.metadata
            expected_attempts: int | None = context.attempts
        else:
            metadata = TransitionMetadata(error=outcome.error)
            expected_attempts = None
        record = await self.store.transition(
            job.confirmation_id,
            SyncState.IN_FLIGHT,
            SyncState.FAILED,
            metadata,
            expected_attempts=expected_attempts,
        )
        logger.error(
            "Confirmation %s (shipment %s) marked for manual ERP review"
            " after %d attempts: %s",
            record.id,
            record.shipment_id,
            record.sync_attempts,
            record.last_error,
        )
        self._emit(
            "state_transition",
            confirmation_id=record.id,
            from_state=SyncState.IN_FLIGHT,
            to_state=SyncState.FAILED,
            attempts=record.sync_attempts,
        )
        self._emit(
            "sync_failed",
            confirmation_id=record.id,
            shipment_id=record.shipment_id,
            attempts=record.sync_attempts,
            error=record.last_error,
        )

    # Ingestion and scheduling

    async def _schedule(
        self, record: ConfirmationRecord, delay: float = 0
    ) -> SyncJob | None:
        try:
            job = await self.queue.enqueue(
                record.id, delay, attempt=record.sync_attempts
            )
        except DuplicateJobError:
            logger.debug("Confirmation %s already scheduled", record.id)
            return None
        self._emit(
            "job_enqueued",
            confirmation_id=record.id,
            job_id=job.id,
            scheduled_at=job.scheduled_at.isoformat(),
        )
        return job

    def notify(self) -> None:
        """Wake the dispatch loop for eager processing."""
        self._wake.set()

    async def submit(
        self, payload: ConfirmationPayload | Mapping[str, Any]
    ) -> ConfirmationRecord:
        """Store a new confirmation and schedule its sync right away.

        Returns as soon as the record is stored; the ERP push happens in
        the background.
        """
        record = await self.store.create(payload)
        self._emit(
            "confirmation_created",
            confirmation_id=record.id,
            shipment_id=record.shipment_id,
        )
        await self._schedule(record)
        self.notify()
        return record

    async def enqueue(
        self, confirmation_id: str, delay: float = 0
    ) -> SyncJob:
        record = await self.store.get(confirmation_id)
        if record.suspended:
            raise ConfirmationSuspendedError(confirmation_id)
        job = await self.queue.enqueue(
            confirmation_id, delay, attempt=record.sync_attempts
        )
        self.notify()
        return job

    async def sweep(self, limit: int | None = None) -> int:
        """Schedule pending records that have no job, e.g. after a crash."""
        in_flight = await self.queue.in_flight_ids()
        records = await self.store.list_pending(
            limit or self.config.batch_size * 10, exclude=in_flight
        )
        scheduled = 0
        for record in records:
            if await self._schedule(record) is not None:
                scheduled += 1
        if scheduled:
            logger.info("Sweep scheduled %d pending confirmations", scheduled)
            self.notify()
        return scheduled

    # Administrative overrides

    async def suspend(self, confirmation_id: str) -> ConfirmationRecord:
        record = await self.store.set_suspended(confirmation_id, True)
        cancelled = await self.queue.cancel(confirmation_id)
        logger.info(
            "Confirmation %s suspended (pending job removed: %s)",
            confirmation_id,
            cancelled,
        )
        self._emit(
            "confirmation_suspended",
            confirmation_id=confirmation_id,
            job_cancelled=cancelled,
            actor=OPERATOR_ACTOR,
        )
        return record

    async def resume(self, confirmation_id: str) -> ConfirmationRecord:
        record = await self.store.set_suspended(confirmation_id, False)
        if record.sync_state is SyncState.PENDING:
            await self._schedule(record)
            self.notify()
        logger.info("Confirmation %s resumed", confirmation_id)
        self._emit(
            "confirmation_resumed",
            confirmation_id=confirmation_id,
            actor=OPERATOR_ACTOR,
        )
        return record

    async def resubmit(self, confirmation_id: str) -> ConfirmationRecord:
        record = await self.store.resubmit(confirmation_id)
        if not record.suspended:
            await self._schedule(record)
            self.notify()
        logger.info(
            "Confirmation %s resubmitted for ERP sync", confirmation_id
        )
        self._emit(
            "confirmation_resubmitted",
            confirmation_id=confirmation_id,
            actor=OPERATOR_ACTOR,
        )
        return record

    async def stats(self) -> dict[str, Any]:
        counts = await self.store.count_by_state()
        total = sum(counts.values())
        synced = counts.get(SyncState.SYNCED, 0)
        success_rate = round(synced / total * 100, 2) if total else 0.0
        return {
            "total": total,
            "pending": counts.get(SyncState.PENDING, 0),
            "in_flight": counts.get(SyncState.IN_FLIGHT, 0),
            "synced": synced,
            "failed": counts.get(SyncState.FAILED, 0),
            "success_rate": success_rate,
            "queue_depth": await self.queue.peek_depth(),
            "circuit": self.breaker.snapshot(),
        }

    # Dispatch

    async def run_cycle(self, now: datetime | None = None) -> CycleReport:
        """Claim a batch of due jobs and process them concurrently."""
        now = now or self._clock()
        report = CycleReport()
        limit = self.breaker.dispatch_limit(self.config.batch_size, now)
        state = self.breaker.state(now)
        if limit <= 0:
            report.skipped = True
            report.circuit_state = state.value
            reason = (
                "circuit_open"
                if state is CircuitState.OPEN
                else "probe_in_flight"
            )
            self._emit("cycle_skipped", reason=reason)
            return report

        try:
            jobs = await self.queue.dequeue_due(
                now, limit, worker_id=self.worker_id
            )
            report.claimed = len(jobs)
            semaphore = asyncio.Semaphore(
                max(1, self.config.worker_concurrency)
            )

            async def run(job: SyncJob) -> str:
                async with semaphore:
                    return await self._process_guarded(job)

            for result in await asyncio.gather(*(run(job) for job in jobs)):
                report.count(result)
        finally:
            if state is CircuitState.HALF_OPEN:
                self.breaker.end_probe()
        report.circuit_state = self.breaker.state().value
        return report

    async def _process_guarded(self, job: SyncJob) -> str:
        try:
            try:
                return await self._process(job)
            except StaleStateError as exc:
                logger.warning(
                    "Job %s for confirmation %s lost a race: %s",
                    job.id,
                    job.confirmation_id,
                    exc,
                )
                return await self._requeue(job, "stale_state")
        except Exception:
            logger.exception(
                "Unexpected error processing job %s for confirmation %s",
                job.id,
                job.confirmation_id,
            )
            return ERRORS

    async def _discard(self, job: SyncJob, reason: str) -> str:
        await self.queue.release(job, JobOutcome.discard())
        self._emit(
            "job_discarded",
            confirmation_id=job.confirmation_id,
            job_id=job.id,
            reason=reason,
        )
        return DISCARDED

    async def _requeue(self, job: SyncJob, reason: str) -> str:
        """Hand a job back as due now; the next cycle reads the record anew.

        A job whose claim was already taken over is left to its new owner.
        """
        try:
            await self.queue.release(job, JobOutcome.retry(0))
        except JobClaimLostError:
            logger.debug("Job %s is owned by another worker", job.id)
            return DISCARDED
        self._emit(
            "job_requeued",
            confirmation_id=job.confirmation_id,
            job_id=job.id,
            reason=reason,
        )
        return DISCARDED

    async def _process(self, job: SyncJob) -> str:
        self._emit(
            "job_claimed",
            confirmation_id=job.confirmation_id,
            job_id=job.id,
            worker_id=self.worker_id,
        )
        try:
            record = await self.store.get(job.confirmation_id)
        except ConfirmationNotFoundError:
            return await self._discard(job, "not_found")
        if record.suspended:
            return await self._discard(job, "suspended")
        if record.sync_state in (SyncState.SYNCED, SyncState.FAILED):
            return await self._discard(job, f"already_{record.sync_state}")
        if record.sync_state is SyncState.IN_FLIGHT:
            # a previous worker's lease on this job expired mid-push
            record = await self._transition(
                record,
                SyncState.PENDING,
                TransitionMetadata(error="claim lease expired"),
            )

        try:
            record = await self._transition(record, SyncState.IN_FLIGHT)
        except StaleStateError:
            return await self._requeue(job, "stale_state")

        attempt = record.sync_attempts
        error: ErpError | None = None
        progress: SyncProgress | None = None
        if not record.verify_integrity():
            error = VerificationHashMismatchError(
                f"Confirmation {record.id} payload does not match its"
                " verification hash"
            )
            logger.error("%s; refusing to sync", error)
        else:
            self._emit(
                "push_attempted",
                confirmation_id=record.id,
                external_shipment_id=record.external_shipment_id,
                attempt=attempt,
            )
            try:
                outcome = await self.adapter.push(record)
            except ErpError as exc:
                error = exc
            except Exception as exc:
                error = TransientError(describe_error(exc))
            else:
                progress = outcome.progress
                error = outcome.error
                if error is not None:
                    self._emit(
                        "push_partial",
                        confirmation_id=record.id,
                        attempt=attempt,
                        status_synced=progress.erp_status_synced,
                        uploaded=len(progress.uploaded_attachments),
                        error=describe_error(error),
                    )
            if error is None:
                self.breaker.record_success()
                self._emit(
                    "push_succeeded",
                    confirmation_id=record.id,
                    attempt=attempt,
                )
            else:
                self.breaker.record_failure()
                self._emit(
                    "push_failed",
                    confirmation_id=record.id,
                    attempt=attempt,
                    error_kind=classify_error(error),
                    error=describe_error(error),
                )

        decision = decide(
            attempt, classify_error(error), self.policy, self._rng
        )
        if decision.kind is DecisionKind.SUCCESS:
            await self._transition(
                record, SyncState.SYNCED, TransitionMetadata(progress=progress)
            )
            await self.queue.release(job, JobOutcome.success())
            logger.info(
                "Confirmation %s synced to ERP shipment %s",
                record.id,
                record.external_shipment_id,
            )
            return SUCCEEDED

        message = describe_error(error)
        if decision.kind is DecisionKind.RETRY:
            updated = await self._transition(
                record,
                SyncState.PENDING,
                TransitionMetadata(error=message, progress=progress),
            )
            if updated.suspended:
                return await self._discard(job, "suspended")
            await self.queue.release(job, JobOutcome.retry(decision.delay))
            self._emit(
                "sync_retry_scheduled",
                confirmation_id=record.id,
                attempt=attempt,
                delay_seconds=round(decision.delay, 2),
                reason=decision.reason,
            )
            return RETRIED

        logger.warning(
            "Confirmation %s will not be retried (%s)",
            record.id,
            decision.reason,
        )
        await self.queue.release(
            job,
            JobOutcome.terminal(
                message,
                context=TerminalContext(
                    TransitionMetadata(error=message, progress=progress),
                    attempts=attempt,
                ),
            ),
        )
        return FAILED

    # Loop

    async def _wait(self, stop_event: asyncio.Event) -> None:
        waiters = {
            asyncio.ensure_future(self._wake.wait()),
            asyncio.ensure_future(stop_event.wait()),
        }
        try:
            await asyncio.wait(
                waiters,
                timeout=self.config.poll_interval_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Run cycles until ``stop_event`` is set.

        A cycle starts when ``notify()`` is called, when the poll interval
        elapses, or straight away when the previous cycle filled a batch.
        """
        logger.info("Sync worker %s started", self.worker_id)
        last_sweep: datetime | None = None
        while not stop_event.is_set():
            now = self._clock()
            if (
                last_sweep is None
                or (now - last_sweep).total_seconds()
                >= self.config.sweep_interval_seconds
            ):
                last_sweep = now
                try:
                    await self.sweep()
                except Exception:
                    logger.exception("Sync sweep failed")
            self._wake.clear()
            try:
                report = await self.run_cycle()
            except Exception:
                logger.exception("Sync cycle failed")
                report = CycleReport()
            if report.claimed and report.claimed >= self.config.batch_size:
                continue
            await self._wait(stop_event)
        logger.info("Sync worker %s stopped", self.worker_id)
