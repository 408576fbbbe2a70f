"""Stateless translation of confirmation records into ERP calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable

from fastapi_erpsync.exceptions import (
    AuthError,
    ErpError,
    PermanentError,
    TransientError,
)
from fastapi_erpsync.protocols import ErpClient
from fastapi_erpsync.types import (
    ConfirmationRecord,
    ErpResult,
    SyncOutcome,
    SyncProgress,
    attachment_key,
)

logger = logging.getLogger(__name__)

DEFAULT_DELIVERED_STATUS = "delivered"


def _severity(exc: ErpError) -> int:
    if isinstance(exc, PermanentError):
        return 2
    if isinstance(exc, AuthError):
        return 1
    return 0


def most_severe(errors: list[ErpError]) -> ErpError:
    """Permanent beats auth, auth beats transient; ties keep the first."""
    return max(errors, key=_severity)


def status_idempotency_key(record: ConfirmationRecord) -> str:
    return f"{record.verification_hash}:status"


def attachment_idempotency_key(
    record: ConfirmationRecord, kind: str, handle: str
) -> str:
    return f"{record.verification_hash}:{kind}:{handle}"


def build_status_notes(record: ConfirmationRecord) -> str:
    payload = record.payload
    parts = [
        f"Delivery confirmed {payload.captured_at.isoformat()}"
        f" for {payload.recipient_name}",
        f"GPS {payload.gps.latitude:.6f},{payload.gps.longitude:.6f}",
    ]
    if payload.gps.accuracy is not None:
        parts[-1] += f" (±{payload.gps.accuracy:g}m)"
    parts.append(f"confirmation {record.id}")
    if payload.notes:
        parts.append(payload.notes.strip())
    return "; ".join(parts)


class ErpAdapter:
    """Push a confirmation record to the ERP.

    The adapter keeps nothing between calls. What was already done is read
    from the record's progress fields, and every external call carries an
    idempotency key derived from the verification hash, so repeating a
    push never creates duplicate ERP artifacts.
    """

    def __init__(
        self,
        client: ErpClient,
        *,
        timeout_seconds: float = 30.0,
        delivered_status: str = DEFAULT_DELIVERED_STATUS,
    ) -> None:
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.delivered_status = delivered_status

    async def _call(self, what: str, call: Awaitable[ErpResult]) -> ErpResult:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except ErpError:
            raise
        except TimeoutError as exc:
            raise TransientError(
                f"{what} timed out after {self.timeout_seconds:g}s"
            ) from exc
        except Exception as exc:
            raise TransientError(f"{what} failed: {exc!r}") from exc

    async def push(self, record: ConfirmationRecord) -> SyncOutcome:
        """Perform the status update and attachment uploads still missing.

        Returns a success outcome when everything is done, a partial
        failure when this call made progress but something failed, and
        raises the most severe ERP error when it made no progress at all.
        """
        status_synced = record.erp_status_synced
        uploaded = list(record.uploaded_attachments)
        errors: list[ErpError] = []
        progressed = False

        if not status_synced:
            try:
                await self._call(
                    "status update",
                    self.client.update_shipment_status(
                        record.external_shipment_id,
                        self.delivered_status,
                        build_status_notes(record),
                        idempotency_key=status_idempotency_key(record),
                    ),
                )
            except ErpError as exc:
                logger.warning(
                    "Status update for confirmation %s failed: %s",
                    record.id,
                    exc,
                )
                errors.append(exc)
                if isinstance(exc, PermanentError | AuthError):
                    raise
            else:
                status_synced = True
                progressed = True

        for kind, handle in record.pending_attachments():
            try:
                await self._call(
                    f"{kind} upload",
                    self.client.upload_attachment(
                        record.external_shipment_id,
                        handle,
                        str(kind),
                        idempotency_key=attachment_idempotency_key(
                            record, kind, handle
                        ),
                    ),
                )
            except ErpError as exc:
                logger.warning(
                    "Upload of %s %s for confirmation %s failed: %s",
                    kind,
                    handle,
                    record.id,
                    exc,
                )
                errors.append(exc)
            else:
                uploaded.append(attachment_key(kind, handle))
                progressed = True

        progress = SyncProgress(
            erp_status_synced=status_synced,
            uploaded_attachments=tuple(uploaded),
        )
        if not errors:
            return SyncOutcome.success(progress)
        error = most_severe(errors)
        if progressed:
            return SyncOutcome.partial(progress, error)
        raise error
