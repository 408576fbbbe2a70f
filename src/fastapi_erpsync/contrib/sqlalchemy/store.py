"""SQLAlchemy confirmation store."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Collection, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fastapi_erpsync.contrib.sqlalchemy.models import (
    AuditLogModel,
    ConfirmationModel,
)
from fastapi_erpsync.exceptions import (
    ConfirmationNotFoundError,
    InvalidTransitionError,
    StaleStateError,
)
from fastapi_erpsync.memory import apply_transition, check_attempts
from fastapi_erpsync.types import (
    ALLOWED_TRANSITIONS,
    INGESTION_ACTOR,
    OPERATOR_ACTOR,
    AuditEntry,
    ConfirmationPayload,
    ConfirmationRecord,
    SyncState,
    TransitionMetadata,
    as_utc,
    compute_verification_hash,
    parse_payload,
    utcnow,
)


def record_from_model(model: ConfirmationModel) -> ConfirmationRecord:
    return ConfirmationRecord(
        id=model.id,
        payload=ConfirmationPayload.model_validate(model.payload),
        verification_hash=model.verification_hash,
        sync_state=SyncState(model.sync_state),
        sync_attempts=model.sync_attempts,
        last_attempt_at=as_utc(model.last_attempt_at),
        last_error=model.last_error,
        synced_at=as_utc(model.synced_at),
        erp_status_synced=model.erp_status_synced,
        uploaded_attachments=tuple(model.uploaded_attachments or ()),
        suspended=model.suspended,
        created_at=as_utc(model.created_at),
    )


def _audit_from_model(model: AuditLogModel) -> AuditEntry:
    return AuditEntry(
        confirmation_id=model.confirmation_id,
        from_state=SyncState(model.from_state) if model.from_state else None,
        to_state=SyncState(model.to_state),
        occurred_at=as_utc(model.occurred_at),
        actor=model.actor,
        detail=model.detail,
    )


class SQLAlchemyConfirmationStore:
    """Confirmation store backed by SQLAlchemy async sessions.

    State changes are compare-and-swap updates guarded by the expected
    ``sync_state``; the audit row is written in the same transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self._clock = clock

    async def _load(
        self, session: AsyncSession, confirmation_id: str
    ) -> ConfirmationModel:
        model = await session.get(ConfirmationModel, confirmation_id)
        if model is None:
            raise ConfirmationNotFoundError(confirmation_id)
        return model

    async def create(
        self, payload: ConfirmationPayload | Mapping[str, Any]
    ) -> ConfirmationRecord:
        parsed = parse_payload(payload)
        now = self._clock()
        model = ConfirmationModel(
            id=str(uuid.uuid4()),
            shipment_id=parsed.shipment_id,
            external_shipment_id=parsed.external_shipment_id,
            captured_at=parsed.captured_at,
            payload=parsed.model_dump(mode="json"),
            verification_hash=compute_verification_hash(parsed),
            sync_state=SyncState.PENDING.value,
            sync_attempts=0,
            erp_status_synced=False,
            uploaded_attachments=[],
            suspended=False,
            created_at=now,
        )
        async with self.session_factory() as session:
            session.add(model)
            session.add(
                AuditLogModel(
                    confirmation_id=model.id,
                    from_state=None,
                    to_state=SyncState.PENDING.value,
                    actor=INGESTION_ACTOR,
                    occurred_at=now,
                )
            )
            await session.commit()
            await session.refresh(model)
            return record_from_model(model)

    async def get(self, confirmation_id: str) -> ConfirmationRecord:
        async with self.session_factory() as session:
            return record_from_model(
                await self._load(session, confirmation_id)
            )

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
        async with self.session_factory() as session:
            current = record_from_model(
                await self._load(session, confirmation_id)
            )
            if current.sync_state is not from_state:
                raise StaleStateError(
                    f"Confirmation {confirmation_id} is {current.sync_state},"
                    f" expected {from_state}"
                )
            check_attempts(current, expected_attempts)
            now = self._clock()
            updated = apply_transition(current, to_state, metadata, now)
            result = await session.execute(
                update(ConfirmationModel)
                .where(
                    ConfirmationModel.id == confirmation_id,
                    ConfirmationModel.sync_state == from_state.value,
                    ConfirmationModel.sync_attempts == current.sync_attempts,
                )
                .values(
                    sync_state=to_state.value,
                    sync_attempts=updated.sync_attempts,
                    last_attempt_at=updated.last_attempt_at,
                    last_error=updated.last_error,
                    synced_at=updated.synced_at,
                    erp_status_synced=updated.erp_status_synced,
                    uploaded_attachments=list(updated.uploaded_attachments),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise StaleStateError(
                    f"Confirmation {confirmation_id} changed concurrently;"
                    f" expected {from_state}"
                )
            session.add(
                AuditLogModel(
                    confirmation_id=confirmation_id,
                    from_state=from_state.value,
                    to_state=to_state.value,
                    actor=metadata.actor,
                    detail=metadata.error,
                    occurred_at=now,
                )
            )
            await session.commit()
        return updated

    async def list_pending(
        self, limit: int, *, exclude: Collection[str] = ()
    ) -> list[ConfirmationRecord]:
        stmt = (
            select(ConfirmationModel)
            .where(
                ConfirmationModel.sync_state == SyncState.PENDING.value,
                ConfirmationModel.suspended.is_(False),
            )
            .order_by(ConfirmationModel.captured_at, ConfirmationModel.id)
            .limit(max(0, limit))
        )
        if exclude:
            stmt = stmt.where(ConfirmationModel.id.not_in(list(exclude)))
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [record_from_model(m) for m in result.scalars().all()]

    async def resubmit(self, confirmation_id: str) -> ConfirmationRecord:
        async with self.session_factory() as session:
            await self._load(session, confirmation_id)
            now = self._clock()
            result = await session.execute(
                update(ConfirmationModel)
                .where(
                    ConfirmationModel.id == confirmation_id,
                    ConfirmationModel.sync_state == SyncState.FAILED.value,
                )
                .values(
                    sync_state=SyncState.PENDING.value,
                    sync_attempts=0,
                    last_error=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise StaleStateError(
                    f"Only failed confirmations can be resubmitted;"
                    f" {confirmation_id} is not failed"
                )
            session.add(
                AuditLogModel(
                    confirmation_id=confirmation_id,
                    from_state=SyncState.FAILED.value,
                    to_state=SyncState.PENDING.value,
                    actor=OPERATOR_ACTOR,
                    detail="resubmitted",
                    occurred_at=now,
                )
            )
            await session.commit()
        return await self.get(confirmation_id)

    async def set_suspended(
        self, confirmation_id: str, suspended: bool
    ) -> ConfirmationRecord:
        async with self.session_factory() as session:
            model = await self._load(session, confirmation_id)
            model.suspended = bool(suspended)
            await session.commit()
            await session.refresh(model)
            return record_from_model(model)

    async def audit_log(self, confirmation_id: str) -> list[AuditEntry]:
        async with self.session_factory() as session:
            await self._load(session, confirmation_id)
            result = await session.execute(
                select(AuditLogModel)
                .where(AuditLogModel.confirmation_id == confirmation_id)
                .order_by(AuditLogModel.id)
            )
            return [_audit_from_model(m) for m in result.scalars().all()]

    async def count_by_state(self) -> dict[SyncState, int]:
        counts = {state: 0 for state in SyncState}
        async with self.session_factory() as session:
            result = await session.execute(
                select(ConfirmationModel.sync_state, func.count()).group_by(
                    ConfirmationModel.sync_state
                )
            )
            for state, count in result.all():
                counts[SyncState(state)] = count
        return counts
