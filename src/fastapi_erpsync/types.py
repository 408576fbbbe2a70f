"""Core sync pipeline types."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from fastapi_erpsync.exceptions import ErpError, ValidationError

PIPELINE_ACTOR = "sync-pipeline"
OPERATOR_ACTOR = "operator"
INGESTION_ACTOR = "ingestion"


class SyncState(StrEnum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    FAILED = "failed"


# Failed -> Pending only happens through an explicit resubmit.
ALLOWED_TRANSITIONS = frozenset(
    {
        (SyncState.PENDING, SyncState.IN_FLIGHT),
        (SyncState.IN_FLIGHT, SyncState.SYNCED),
        (SyncState.IN_FLIGHT, SyncState.PENDING),
        (SyncState.IN_FLIGHT, SyncState.FAILED),
    }
)


class AttachmentKind(StrEnum):
    SIGNATURE = "signature"
    PHOTO = "photo"


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def attachment_key(kind: AttachmentKind | str, handle: str) -> str:
    return f"{kind}:{handle}"


class GpsCoordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    accuracy: float | None = Field(default=None, ge=0.0)


class ConfirmationPayload(BaseModel):
    """Proof-of-delivery evidence captured by the driver.

    Signature and photos are opaque blob storage handles; the pipeline
    never touches the bytes.
    """

    model_config = ConfigDict(frozen=True)

    shipment_id: str = Field(min_length=1)
    external_shipment_id: str = Field(min_length=1)
    captured_at: datetime
    recipient_name: str
    gps: GpsCoordinates
    signature_handle: str | None = None
    photo_handles: tuple[str, ...] = ()
    notes: str | None = None

    @field_validator("recipient_name")
    @classmethod
    def _recipient_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("recipient_name must not be blank")
        return value

    @field_validator("captured_at")
    @classmethod
    def _captured_at_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    def attachments(self) -> Iterator[tuple[AttachmentKind, str]]:
        """Yield (kind, handle) pairs in upload order."""
        if self.signature_handle:
            yield AttachmentKind.SIGNATURE, self.signature_handle
        for handle in self.photo_handles:
            yield AttachmentKind.PHOTO, handle


def parse_payload(
    data: ConfirmationPayload | Mapping[str, Any],
) -> ConfirmationPayload:
    """Validate raw ingestion data into a ConfirmationPayload."""
    if isinstance(data, ConfirmationPayload):
        return data
    try:
        return ConfirmationPayload.model_validate(dict(data))
    except PydanticValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ValidationError(
            "Invalid delivery confirmation payload", errors
        ) from exc


def compute_verification_hash(payload: ConfirmationPayload) -> str:
    """SHA-256 over the canonical JSON form of the payload."""
    canonical = json.dumps(
        payload.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SyncProgress:
    """Which halves of a push the ERP has already acknowledged."""

    erp_status_synced: bool = False
    uploaded_attachments: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConfirmationRecord:
    id: str
    payload: ConfirmationPayload
    verification_hash: str
    sync_state: SyncState = SyncState.PENDING
    sync_attempts: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    synced_at: datetime | None = None
    erp_status_synced: bool = False
    uploaded_attachments: tuple[str, ...] = ()
    suspended: bool = False
    created_at: datetime | None = None

    @property
    def shipment_id(self) -> str:
        return self.payload.shipment_id

    @property
    def external_shipment_id(self) -> str:
        return self.payload.external_shipment_id

    @property
    def captured_at(self) -> datetime:
        return self.payload.captured_at

    @property
    def progress(self) -> SyncProgress:
        return SyncProgress(
            erp_status_synced=self.erp_status_synced,
            uploaded_attachments=self.uploaded_attachments,
        )

    def verify_integrity(self) -> bool:
        return self.verification_hash == compute_verification_hash(
            self.payload
        )

    def pending_attachments(self) -> list[tuple[AttachmentKind, str]]:
        done = set(self.uploaded_attachments)
        return [
            (kind, handle)
            for kind, handle in self.payload.attachments()
            if attachment_key(kind, handle) not in done
        ]


@dataclass(frozen=True)
class TransitionMetadata:
    error: str | None = None
    progress: SyncProgress | None = None
    actor: str = PIPELINE_ACTOR


@dataclass(frozen=True)
class AuditEntry:
    confirmation_id: str
    from_state: SyncState | None
    to_state: SyncState
    occurred_at: datetime
    actor: str = PIPELINE_ACTOR
    detail: str | None = None


class JobState(StrEnum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"


@dataclass(frozen=True)
class SyncJob:
    id: str
    confirmation_id: str
    scheduled_at: datetime
    attempt: int = 0
    state: JobState = JobState.PENDING
    claim_token: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    lease_expires_at: datetime | None = None


class JobOutcomeKind(StrEnum):
    SUCCESS = "success"
    RETRY = "retry"
    TERMINAL = "terminal"
    DISCARD = "discard"


@dataclass(frozen=True)
class JobOutcome:
    """How a claimed job is released.

    ``context`` is handed untouched to the queue's terminal hook.
    """

    kind: JobOutcomeKind
    delay: float = 0.0
    error: str | None = None
    context: Any = None

    @classmethod
    def success(cls) -> JobOutcome:
        return cls(JobOutcomeKind.SUCCESS)

    @classmethod
    def retry(cls, delay: float) -> JobOutcome:
        return cls(JobOutcomeKind.RETRY, delay=max(0.0, float(delay)))

    @classmethod
    def terminal(cls, error: str, context: Any = None) -> JobOutcome:
        return cls(JobOutcomeKind.TERMINAL, error=error, context=context)

    @classmethod
    def discard(cls) -> JobOutcome:
        return cls(JobOutcomeKind.DISCARD)


class OutcomeKind(StrEnum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"


@dataclass(frozen=True)
class SyncOutcome:
    kind: OutcomeKind
    progress: SyncProgress
    error: ErpError | None = None

    @classmethod
    def success(cls, progress: SyncProgress) -> SyncOutcome:
        return cls(OutcomeKind.SUCCESS, progress)

    @classmethod
    def partial(cls, progress: SyncProgress, error: ErpError) -> SyncOutcome:
        return cls(OutcomeKind.PARTIAL_FAILURE, progress, error)

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


@dataclass(frozen=True)
class ErpResult:
    reference: str | None = None
    duplicate: bool = False
