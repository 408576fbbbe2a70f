"""SQLAlchemy sync job queue.

Claims are conditional ``UPDATE`` statements: a worker owns a job only if
its update matched the row it saw as claimable. Any number of worker
processes can share the table.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fastapi_erpsync.contrib.sqlalchemy.models import SyncJobModel
from fastapi_erpsync.exceptions import DuplicateJobError, JobClaimLostError
from fastapi_erpsync.protocols import TerminalHook
from fastapi_erpsync.types import (
    JobOutcome,
    JobOutcomeKind,
    JobState,
    SyncJob,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


def job_from_model(model: SyncJobModel) -> SyncJob:
    return SyncJob(
        id=model.id,
        confirmation_id=model.confirmation_id,
        scheduled_at=as_utc(model.scheduled_at),
        attempt=model.attempt,
        state=JobState(model.state),
        claim_token=model.claim_token,
        claimed_by=model.claimed_by,
        claimed_at=as_utc(model.claimed_at),
        lease_expires_at=as_utc(model.lease_expires_at),
    )


def _owned_by(job: SyncJob):
    return and_(
        SyncJobModel.id == job.id,
        SyncJobModel.state == JobState.IN_FLIGHT.value,
        SyncJobModel.claim_token == job.claim_token,
    )


class SQLAlchemySyncJobQueue:
    """Sync job queue backed by SQLAlchemy async sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        lease_seconds: float = 300,
        on_terminal: TerminalHook | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.lease = timedelta(seconds=lease_seconds)
        self.on_terminal = on_terminal
        self._clock = clock

    async def enqueue(
        self, confirmation_id: str, delay: float = 0, *, attempt: int = 0
    ) -> SyncJob:
        now = self._clock()
        scheduled_at = now + timedelta(seconds=max(0.0, float(delay)))
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncJobModel).where(
                    SyncJobModel.confirmation_id == confirmation_id
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = SyncJobModel(
                    id=str(uuid.uuid4()),
                    confirmation_id=confirmation_id,
                    scheduled_at=scheduled_at,
                    attempt=attempt,
                    state=JobState.PENDING.value,
                    created_at=now,
                )
                session.add(model)
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise DuplicateJobError(
                        f"Job for {confirmation_id} already exists"
                    ) from e
                return job_from_model(model)

            existing = job_from_model(model)
            if existing.state is JobState.IN_FLIGHT:
                raise DuplicateJobError(
                    f"Job for {confirmation_id} is in flight"
                )
            if existing.scheduled_at <= scheduled_at:
                raise DuplicateJobError(
                    f"Job for {confirmation_id} already scheduled at"
                    f" {existing.scheduled_at.isoformat()}"
                )
            result = await session.execute(
                update(SyncJobModel)
                .where(
                    SyncJobModel.id == existing.id,
                    SyncJobModel.state == JobState.PENDING.value,
                )
                .values(scheduled_at=scheduled_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise DuplicateJobError(
                    f"Job for {confirmation_id} was claimed concurrently"
                )
            await session.commit()
        return SyncJob(
            id=existing.id,
            confirmation_id=confirmation_id,
            scheduled_at=scheduled_at,
            attempt=existing.attempt,
        )

    async def dequeue_due(
        self,
        now: datetime,
        max_batch: int,
        *,
        worker_id: str | None = None,
    ) -> list[SyncJob]:
        if max_batch <= 0:
            return []
        pending_due = and_(
            SyncJobModel.state == JobState.PENDING.value,
            SyncJobModel.scheduled_at <= now,
        )
        lease_expired = and_(
            SyncJobModel.state == JobState.IN_FLIGHT.value,
            SyncJobModel.lease_expires_at <= now,
        )
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncJobModel)
                .where(or_(pending_due, lease_expired))
                .order_by(SyncJobModel.scheduled_at, SyncJobModel.id)
                .limit(max_batch)
            )
            candidates = [job_from_model(m) for m in result.scalars().all()]

        claimed: list[SyncJob] = []
        for candidate in candidates:
            job = await self._claim(candidate, now, worker_id)
            if job is not None:
                claimed.append(job)
        return claimed

    async def _claim(
        self, candidate: SyncJob, now: datetime, worker_id: str | None
    ) -> SyncJob | None:
        if candidate.state is JobState.PENDING:
            still_claimable = and_(
                SyncJobModel.state == JobState.PENDING.value,
                SyncJobModel.scheduled_at <= now,
            )
        else:
            still_claimable = and_(
                SyncJobModel.state == JobState.IN_FLIGHT.value,
                SyncJobModel.claim_token == candidate.claim_token,
                SyncJobModel.lease_expires_at <= now,
            )
        token = uuid.uuid4().hex
        lease_expires_at = now + self.lease
        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncJobModel)
                .where(SyncJobModel.id == candidate.id, still_claimable)
                .values(
                    state=JobState.IN_FLIGHT.value,
                    claim_token=token,
                    claimed_by=worker_id,
                    claimed_at=now,
                    lease_expires_at=lease_expires_at,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            return None
        if candidate.state is JobState.IN_FLIGHT:
            logger.warning(
                "Reclaiming job %s for %s after lease expiry",
                candidate.id,
                candidate.confirmation_id,
            )
        return SyncJob(
            id=candidate.id,
            confirmation_id=candidate.confirmation_id,
            scheduled_at=candidate.scheduled_at,
            attempt=candidate.attempt,
            state=JobState.IN_FLIGHT,
            claim_token=token,
            claimed_by=worker_id,
            claimed_at=now,
            lease_expires_at=lease_expires_at,
        )

    async def _is_owned(self, job: SyncJob) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncJobModel.id).where(_owned_by(job))
            )
            return result.scalar_one_or_none() is not None

    async def release(self, job: SyncJob, outcome: JobOutcome) -> None:
        """Apply ``outcome`` to a job this worker still owns.

        On a terminal outcome the ``on_terminal`` hook runs while the claim
        is still held and the row is deleted only after it returned. A hook
        that raises leaves the job claimed until its lease expires.
        """
        if outcome.kind is JobOutcomeKind.TERMINAL and self.on_terminal:
            if not await self._is_owned(job):
                raise JobClaimLostError(
                    f"Claim on job {job.id} for {job.confirmation_id} was lost"
                )
            await self.on_terminal(job, outcome)
        if outcome.kind is JobOutcomeKind.RETRY:
            stmt = (
                update(SyncJobModel)
                .where(_owned_by(job))
                .values(
                    state=JobState.PENDING.value,
                    scheduled_at=self._clock()
                    + timedelta(seconds=outcome.delay),
                    attempt=SyncJobModel.attempt + 1,
                    claim_token=None,
                    claimed_by=None,
                    claimed_at=None,
                    lease_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )
        else:
            stmt = (
                delete(SyncJobModel)
                .where(_owned_by(job))
                .execution_options(synchronize_session=False)
            )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                raise JobClaimLostError(
                    f"Claim on job {job.id} for {job.confirmation_id} was lost"
                )
            await session.commit()

    async def cancel(self, confirmation_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(SyncJobModel)
                .where(
                    SyncJobModel.confirmation_id == confirmation_id,
                    SyncJobModel.state == JobState.PENDING.value,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    async def in_flight_ids(self) -> set[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncJobModel.confirmation_id).where(
                    SyncJobModel.state == JobState.IN_FLIGHT.value
                )
            )
            return set(result.scalars().all())

    async def peek_depth(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(SyncJobModel)
            )
            return int(result.scalar_one())
