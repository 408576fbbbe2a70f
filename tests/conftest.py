"""Shared fixtures for fastapi-erpsync tests."""

from __future__ import annotations

import random
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta

import pytest

from fastapi_erpsync.adapter import ErpAdapter
from fastapi_erpsync.circuit import SyncCircuitBreaker
from fastapi_erpsync.config import ErpSyncConfig
from fastapi_erpsync.memory import (
    InMemoryConfirmationStore,
    InMemorySyncJobQueue,
)
from fastapi_erpsync.orchestrator import SyncOrchestrator
from fastapi_erpsync.types import ErpResult

START = datetime(2025, 1, 1, 8, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeErpClient:
    """ERP double that honours idempotency keys like a real ERP would.

    ``status_calls`` and ``upload_calls`` log every request; the
    ``status_updates`` and ``attachments`` dicts hold the artifacts that
    were actually created, keyed by idempotency key.
    """

    def __init__(self) -> None:
        self.status_calls: list[dict] = []
        self.upload_calls: list[dict] = []
        self.status_updates: dict[str, dict] = {}
        self.attachments: dict[str, dict] = {}
        self._status_failures: list[BaseException] = []
        self._upload_failures: dict[str, list[BaseException]] = {}

    def fail_status(self, *errors: BaseException) -> None:
        self._status_failures.extend(errors)

    def fail_upload(self, blob: str, *errors: BaseException) -> None:
        self._upload_failures.setdefault(blob, []).extend(errors)

    async def update_shipment_status(
        self,
        external_id: str,
        status: str,
        notes: str,
        *,
        idempotency_key: str,
    ) -> ErpResult:
        self.status_calls.append(
            {
                "external_id": external_id,
                "status": status,
                "notes": notes,
                "idempotency_key": idempotency_key,
            }
        )
        if self._status_failures:
            raise self._status_failures.pop(0)
        if idempotency_key in self.status_updates:
            return ErpResult(reference=external_id, duplicate=True)
        self.status_updates[idempotency_key] = {
            "external_id": external_id,
            "status": status,
        }
        return ErpResult(reference=external_id)

    async def upload_attachment(
        self,
        external_id: str,
        blob: str,
        kind: str,
        *,
        idempotency_key: str,
    ) -> ErpResult:
        self.upload_calls.append(
            {
                "external_id": external_id,
                "blob": blob,
                "kind": kind,
                "idempotency_key": idempotency_key,
            }
        )
        failures = self._upload_failures.get(blob)
        if failures:
            raise failures.pop(0)
        if idempotency_key in self.attachments:
            return ErpResult(reference=blob, duplicate=True)
        self.attachments[idempotency_key] = {
            "external_id": external_id,
            "blob": blob,
            "kind": kind,
        }
        return ErpResult(reference=blob)


class RecordingEventSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def emit(self, event: str, fields: Mapping[str, object]) -> None:
        self.events.append((event, dict(fields)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> list[dict]:
        return [fields for name, fields in self.events if name == event]


def make_payload(**overrides) -> dict:
    payload = {
        "shipment_id": "SHP-1001",
        "external_shipment_id": "42",
        "captured_at": "2025-01-01T07:30:00+00:00",
        "recipient_name": "Anna Kowalska",
        "gps": {"latitude": 52.2297, "longitude": 21.0122, "accuracy": 5.0},
        "signature_handle": "signatures/SHP-1001.png",
        "photo_handles": ["photos/SHP-1001-1.jpg"],
        "notes": "Left with reception",
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config() -> ErpSyncConfig:
    return ErpSyncConfig(
        retry_max_attempts=5,
        retry_backoff_seconds=60,
        retry_max_backoff_seconds=1200,
        batch_size=10,
        worker_concurrency=4,
        push_timeout_seconds=5,
    )


@pytest.fixture()
def erp_client() -> FakeErpClient:
    return FakeErpClient()


@pytest.fixture()
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture()
def store(clock) -> InMemoryConfirmationStore:
    return InMemoryConfirmationStore(clock=clock)


@pytest.fixture()
def queue(clock, config) -> InMemorySyncJobQueue:
    return InMemorySyncJobQueue(
        lease_seconds=config.claim_lease_seconds, clock=clock
    )


@pytest.fixture()
def adapter(erp_client, config) -> ErpAdapter:
    return ErpAdapter(
        erp_client,
        timeout_seconds=config.push_timeout_seconds,
        delivered_status=config.erp_delivered_status,
    )


@pytest.fixture()
def breaker(config, events, clock) -> SyncCircuitBreaker:
    return SyncCircuitBreaker.from_config(config, events=events, clock=clock)


@pytest.fixture()
def orchestrator(
    store, queue, adapter, config, breaker, events, clock
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        queue,
        adapter,
        config=config,
        breaker=breaker,
        events=events,
        clock=clock,
        rng=random.Random(7),
        worker_id="test-worker",
    )


@pytest.fixture()
async def async_engine():
    """Create an in-memory aiosqlite async engine."""
    from sqlalchemy.ext.asyncio import create_async_engine
    from sqlalchemy.pool import StaticPool

    from fastapi_erpsync.contrib.sqlalchemy.models import Base

    engine = create_async_engine(
        "sqlite+aiosqlite://", echo=False, poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
async def async_session_factory(async_engine):
    """Create an async session factory bound to the in-memory engine."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    factory = async_sessionmaker(
        async_engine, class_=AsyncSession, expire_on_commit=False
    )
    yield factory


@pytest.fixture()
def sqlalchemy_store(async_session_factory, clock):
    from fastapi_erpsync.contrib.sqlalchemy.store import (
        SQLAlchemyConfirmationStore,
    )

    return SQLAlchemyConfirmationStore(async_session_factory, clock=clock)


@pytest.fixture()
def sqlalchemy_queue(async_session_factory, clock):
    from fastapi_erpsync.contrib.sqlalchemy.queue import (
        SQLAlchemySyncJobQueue,
    )

    return SQLAlchemySyncJobQueue(
        async_session_factory, lease_seconds=300, clock=clock
    )
