"""Pydantic request/response schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from fastapi_erpsync.types import (
    AuditEntry,
    ConfirmationRecord,
    GpsCoordinates,
)


class CreateConfirmationRequest(BaseModel):
    """Delivery confirmation submitted by a driver app."""

    shipment_id: str
    external_shipment_id: str
    captured_at: datetime
    recipient_name: str
    gps: GpsCoordinates
    signature_handle: str | None = None
    photo_handles: list[str] = []
    notes: str | None = None


class ConfirmationResponse(BaseModel):
    id: str
    shipment_id: str
    external_shipment_id: str
    captured_at: datetime
    recipient_name: str
    verification_hash: str
    sync_state: str
    sync_attempts: int
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    synced_at: datetime | None = None
    erp_status_synced: bool = False
    uploaded_attachments: list[str] = []
    suspended: bool = False

    @classmethod
    def from_record(cls, record: ConfirmationRecord) -> ConfirmationResponse:
        return cls(
            id=record.id,
            shipment_id=record.shipment_id,
            external_shipment_id=record.external_shipment_id,
            captured_at=record.captured_at,
            recipient_name=record.payload.recipient_name,
            verification_hash=record.verification_hash,
            sync_state=str(record.sync_state),
            sync_attempts=record.sync_attempts,
            last_attempt_at=record.last_attempt_at,
            last_error=record.last_error,
            synced_at=record.synced_at,
            erp_status_synced=record.erp_status_synced,
            uploaded_attachments=list(record.uploaded_attachments),
            suspended=record.suspended,
        )


class AuditEntryResponse(BaseModel):
    from_state: str | None
    to_state: str
    occurred_at: datetime
    actor: str
    detail: str | None = None

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> AuditEntryResponse:
        return cls(
            from_state=str(entry.from_state) if entry.from_state else None,
            to_state=str(entry.to_state),
            occurred_at=entry.occurred_at,
            actor=entry.actor,
            detail=entry.detail,
        )


class CircuitResponse(BaseModel):
    state: str
    enabled: bool
    failures: int
    failure_threshold: int
    opened_seconds_ago: float


class SyncStatsResponse(BaseModel):
    total: int
    pending: int
    in_flight: int
    synced: int
    failed: int
    success_rate: float
    queue_depth: int
    circuit: CircuitResponse
