"""SQLAlchemy confirmation/audit/job models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fastapi_erpsync.types import JobState, SyncState, utcnow


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


class ConfirmationModel(Base):
    """Delivery confirmation with its ERP sync state."""

    __tablename__ = "erpsync_confirmations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    shipment_id: Mapped[str] = mapped_column(String(128), index=True)
    external_shipment_id: Mapped[str] = mapped_column(String(128))
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), index=True
    )
    payload: Mapped[dict] = mapped_column(JSON)
    verification_hash: Mapped[str] = mapped_column(String(64))
    sync_state: Mapped[str] = mapped_column(
        String(16), default=SyncState.PENDING.value, index=True
    )
    sync_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    erp_status_synced: Mapped[bool] = mapped_column(Boolean, default=False)
    uploaded_attachments: Mapped[list] = mapped_column(JSON, default=list)
    suspended: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )


class AuditLogModel(Base):
    """One row per confirmation state change."""

    __tablename__ = "erpsync_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    confirmation_id: Mapped[str] = mapped_column(String(36), index=True)
    from_state: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_state: Mapped[str] = mapped_column(String(16))
    actor: Mapped[str] = mapped_column(String(64))
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SyncJobModel(Base):
    """Scheduled or claimed sync job; one row per confirmation at most."""

    __tablename__ = "erpsync_sync_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    confirmation_id: Mapped[str] = mapped_column(String(36), unique=True)
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), index=True
    )
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    state: Mapped[str] = mapped_column(
        String(16), default=JobState.PENDING.value, index=True
    )
    claim_token: Mapped[str | None] = mapped_column(String(32), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
