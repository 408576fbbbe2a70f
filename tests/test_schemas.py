"""Pydantic schema tests."""

from __future__ import annotations

from conftest import START, make_payload
from fastapi_erpsync.schemas import (
    AuditEntryResponse,
    ConfirmationResponse,
    CreateConfirmationRequest,
)
from fastapi_erpsync.types import (
    AuditEntry,
    ConfirmationRecord,
    SyncState,
    compute_verification_hash,
    parse_payload,
)


class TestCreateConfirmationRequest:
    def test_optional_fields_default(self) -> None:
        data = make_payload()
        del data["signature_handle"]
        del data["photo_handles"]
        del data["notes"]

        req = CreateConfirmationRequest.model_validate(data)

        assert req.signature_handle is None
        assert req.photo_handles == []
        assert req.notes is None

    def test_dump_feeds_payload_parser(self) -> None:
        req = CreateConfirmationRequest.model_validate(make_payload())

        payload = parse_payload(req.model_dump())

        assert payload.photo_handles == ("photos/SHP-1001-1.jpg",)
        assert payload.gps.accuracy == 5.0


class TestConfirmationResponse:
    def test_from_record(self) -> None:
        payload = parse_payload(make_payload())
        record = ConfirmationRecord(
            id="c-1",
            payload=payload,
            verification_hash=compute_verification_hash(payload),
            sync_state=SyncState.IN_FLIGHT,
            sync_attempts=2,
            uploaded_attachments=("signature:signatures/SHP-1001.png",),
        )

        resp = ConfirmationResponse.from_record(record)

        assert resp.id == "c-1"
        assert resp.sync_state == "in_flight"
        assert resp.sync_attempts == 2
        assert resp.recipient_name == "Anna Kowalska"
        assert resp.uploaded_attachments == [
            "signature:signatures/SHP-1001.png"
        ]
        assert resp.suspended is False


class TestAuditEntryResponse:
    def test_creation_entry_has_no_from_state(self) -> None:
        entry = AuditEntry(
            confirmation_id="c-1",
            from_state=None,
            to_state=SyncState.PENDING,
            occurred_at=START,
            actor="ingestion",
        )

        resp = AuditEntryResponse.from_entry(entry)

        assert resp.from_state is None
        assert resp.to_state == "pending"
        assert resp.actor == "ingestion"
