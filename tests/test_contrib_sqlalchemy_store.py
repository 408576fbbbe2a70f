"""SQLAlchemy confirmation store integration tests."""

from datetime import timedelta

import pytest

from conftest import START, make_payload
from fastapi_erpsync.contrib.sqlalchemy.store import (
    SQLAlchemyConfirmationStore,
)
from fastapi_erpsync.exceptions import (
    ConfirmationNotFoundError,
    InvalidTransitionError,
    StaleStateError,
    ValidationError,
)
from fastapi_erpsync.protocols import ConfirmationStore
from fastapi_erpsync.types import (
    SyncProgress,
    SyncState,
    TransitionMetadata,
)


def test_satisfies_protocol(sqlalchemy_store) -> None:
    assert isinstance(sqlalchemy_store, SQLAlchemyConfirmationStore)
    assert isinstance(sqlalchemy_store, ConfirmationStore)


async def test_create_then_get_round_trip(sqlalchemy_store) -> None:
    created = await sqlalchemy_store.create(make_payload())

    fetched = await sqlalchemy_store.get(created.id)

    assert fetched.id == created.id
    assert fetched.payload == created.payload
    assert fetched.verification_hash == created.verification_hash
    assert fetched.verify_integrity()
    assert fetched.sync_state is SyncState.PENDING
    assert fetched.created_at == START


async def test_create_rejects_invalid_payload(sqlalchemy_store) -> None:
    with pytest.raises(ValidationError):
        await sqlalchemy_store.create(make_payload(recipient_name=""))


async def test_get_unknown_raises(sqlalchemy_store) -> None:
    with pytest.raises(ConfirmationNotFoundError):
        await sqlalchemy_store.get("missing")


async def test_full_lifecycle(sqlalchemy_store, clock) -> None:
    record = await sqlalchemy_store.create(make_payload())

    claimed = await sqlalchemy_store.transition(
        record.id, SyncState.PENDING, SyncState.IN_FLIGHT
    )
    assert claimed.sync_attempts == 1

    retried = await sqlalchemy_store.transition(
        record.id,
        SyncState.IN_FLIGHT,
        SyncState.PENDING,
        TransitionMetadata(
            error="TransientError: 503",
            progress=SyncProgress(erp_status_synced=True),
        ),
    )
    assert retried.last_error == "TransientError: 503"

    await sqlalchemy_store.transition(
        record.id, SyncState.PENDING, SyncState.IN_FLIGHT
    )
    clock.advance(30)
    await sqlalchemy_store.transition(
        record.id, SyncState.IN_FLIGHT, SyncState.SYNCED
    )

    stored = await sqlalchemy_store.get(record.id)
    assert stored.sync_state is SyncState.SYNCED
    assert stored.sync_attempts == 2
    assert stored.erp_status_synced is True
    assert stored.last_error is None
    assert stored.synced_at == START + timedelta(seconds=30)


async def test_stale_transition_raises(sqlalchemy_store) -> None:
    record = await sqlalchemy_store.create(make_payload())
    await sqlalchemy_store.transition(
        record.id, SyncState.PENDING, SyncState.IN_FLIGHT
    )

    with pytest.raises(StaleStateError):
        await sqlalchemy_store.transition(
            record.id, SyncState.PENDING, SyncState.IN_FLIGHT
        )


async def test_illegal_transition_raises(sqlalchemy_store) -> None:
    record = await sqlalchemy_store.create(make_payload())

    with pytest.raises(InvalidTransitionError):
        await sqlalchemy_store.transition(
            record.id, SyncState.PENDING, SyncState.SYNCED
        )


async def test_audit_log(sqlalchemy_store) -> None:
    record = await sqlalchemy_store.create(make_payload())
    await sqlalchemy_store.transition(
        record.id, SyncState.PENDING, SyncState.IN_FLIGHT
    )
    await sqlalchemy_store.transition(
        record.id,
        SyncState.IN_FLIGHT,
        SyncState.FAILED,
        TransitionMetadata(error="PermanentError: unknown shipment"),
    )

    log = await sqlalchemy_store.audit_log(record.id)

    assert [(e.from_state, e.to_state) for e in log] == [
        (None, SyncState.PENDING),
        (SyncState.PENDING, SyncState.IN_FLIGHT),
        (SyncState.IN_FLIGHT, SyncState.FAILED),
    ]
    assert log[-1].detail == "PermanentError: unknown shipment"
    assert log[-1].occurred_at == START


async def test_list_pending(sqlalchemy_store) -> None:
    late = await sqlalchemy_store.create(
        make_payload(captured_at="2025-01-01T09:00:00+00:00")
    )
    early = await sqlalchemy_store.create(
        make_payload(captured_at="2025-01-01T06:00:00+00:00")
    )
    busy = await sqlalchemy_store.create(make_payload())
    held = await sqlalchemy_store.create(make_payload())
    await sqlalchemy_store.set_suspended(held.id, True)

    pending = await sqlalchemy_store.list_pending(10, exclude=[busy.id])

    assert [r.id for r in pending] == [early.id, late.id]


async def test_resubmit(sqlalchemy_store) -> None:
    record = await sqlalchemy_store.create(make_payload())
    with pytest.raises(StaleStateError):
        await sqlalchemy_store.resubmit(record.id)

    await sqlalchemy_store.transition(
        record.id, SyncState.PENDING, SyncState.IN_FLIGHT
    )
    await sqlalchemy_store.transition(
        record.id,
        SyncState.IN_FLIGHT,
        SyncState.FAILED,
        TransitionMetadata(error="boom"),
    )

    resubmitted = await sqlalchemy_store.resubmit(record.id)

    assert resubmitted.sync_state is SyncState.PENDING
    assert resubmitted.sync_attempts == 0
    assert resubmitted.last_error is None
    assert (await sqlalchemy_store.audit_log(record.id))[-1].actor == (
        "operator"
    )


async def test_count_by_state(sqlalchemy_store) -> None:
    first = await sqlalchemy_store.create(make_payload())
    await sqlalchemy_store.create(make_payload())
    await sqlalchemy_store.transition(
        first.id, SyncState.PENDING, SyncState.IN_FLIGHT
    )

    counts = await sqlalchemy_store.count_by_state()

    assert counts == {
        SyncState.PENDING: 1,
        SyncState.IN_FLIGHT: 1,
        SyncState.SYNCED: 0,
        SyncState.FAILED: 0,
    }


async def test_transition_fenced_on_attempts(sqlalchemy_store) -> None:
    record = await sqlalchemy_store.create(make_payload())
    await sqlalchemy_store.transition(
        record.id, SyncState.PENDING, SyncState.IN_FLIGHT
    )

    with pytest.raises(StaleStateError):
        await sqlalchemy_store.transition(
            record.id,
            SyncState.IN_FLIGHT,
            SyncState.PENDING,
            TransitionMetadata(error="late worker"),
            expected_attempts=0,
        )

    current = await sqlalchemy_store.get(record.id)
    assert current.sync_state is SyncState.IN_FLIGHT
    assert current.last_error is None
    log = await sqlalchemy_store.audit_log(record.id)
    assert [entry.to_state for entry in log] == [
        SyncState.PENDING,
        SyncState.IN_FLIGHT,
    ]
