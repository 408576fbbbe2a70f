"""Dolibarr REST implementation of the ERP client."""

from __future__ import annotations

import base64
import hashlib
import logging
from pathlib import PurePosixPath
from typing import Any

import httpx

from fastapi_erpsync.config import ErpSyncConfig
from fastapi_erpsync.exceptions import (
    AuthError,
    PermanentError,
    TransientError,
)
from fastapi_erpsync.protocols import BlobStorage
from fastapi_erpsync.types import ErpResult

logger = logging.getLogger(__name__)

# Dolibarr expedition status codes
DOLIBARR_STATUS_CODES = {
    "draft": 0,
    "validated": 1,
    "in_transit": 2,
    "delivered": 3,
}

RETRYABLE_STATUS_CODES = frozenset({408, 429})


def classify_response(response: httpx.Response) -> None:
    """Raise the ERP error matching a non-2xx response."""
    if response.is_success:
        return
    code = response.status_code
    message = f"Dolibarr answered {code} for {response.request.url.path}"
    body = response.text.strip()
    if body:
        message = f"{message}: {body[:200]}"
    if code in (401, 403):
        raise AuthError(message)
    if code in RETRYABLE_STATUS_CODES or code >= 500:
        raise TransientError(message)
    raise PermanentError(message)


def attachment_filename(kind: str, blob: str, idempotency_key: str) -> str:
    """Stable per-attachment file name; a repeated upload overwrites it."""
    suffix = PurePosixPath(blob).suffix or ".bin"
    digest = hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:16]
    return f"{kind}_{digest}{suffix}"


def _response_reference(response: httpx.Response, default: str) -> str:
    """Dolibarr usually answers with a JSON id; anything else is ignored."""
    if not response.content:
        return default
    try:
        reference = response.json()
    except ValueError:
        return default
    return default if reference is None else str(reference)


class DolibarrErpClient:
    """Talk to the Dolibarr REST API (``/api/index.php``).

    Every request carries the ``DOLAPIKEY`` header and the caller's
    idempotency key.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        blobs: BlobStorage,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.blobs = blobs
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(
        cls, config: ErpSyncConfig, blobs: BlobStorage
    ) -> DolibarrErpClient:
        return cls(
            config.dolibarr_url,
            config.dolibarr_api_key.get_secret_value(),
            blobs,
            timeout=config.push_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> DolibarrErpClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        idempotency_key: str,
        payload: dict[str, Any],
    ) -> httpx.Response:
        headers = {
            "DOLAPIKEY": self.api_key,
            "Accept": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        try:
            response = await self.client.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"Dolibarr {method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise TransientError(
                f"Dolibarr {method} {path} failed: {e!r}"
            ) from e
        classify_response(response)
        return response

    async def update_shipment_status(
        self,
        external_id: str,
        status: str,
        notes: str,
        *,
        idempotency_key: str,
    ) -> ErpResult:
        try:
            status_code = DOLIBARR_STATUS_CODES[status]
        except KeyError as e:
            raise PermanentError(f"Unknown Dolibarr status {status!r}") from e
        await self._request(
            "PUT",
            f"/shipments/{external_id}",
            idempotency_key=idempotency_key,
            payload={"status": status_code, "note_private": notes},
        )
        logger.info("Dolibarr shipment %s set to %s", external_id, status)
        return ErpResult(reference=external_id)

    async def upload_attachment(
        self,
        external_id: str,
        blob: str,
        kind: str,
        *,
        idempotency_key: str,
    ) -> ErpResult:
        try:
            content = await self.blobs.read(blob)
        except FileNotFoundError as e:
            raise PermanentError(f"{kind} blob {blob} is missing") from e
        except ValueError as e:
            raise PermanentError(str(e)) from e
        except OSError as e:
            raise TransientError(f"Could not read {kind} blob {blob}") from e
        filename = attachment_filename(kind, blob, idempotency_key)
        response = await self._request(
            "POST",
            "/documents/upload",
            idempotency_key=idempotency_key,
            payload={
                "filename": filename,
                "modulepart": "expedition",
                "ref": external_id,
                "subdir": "",
                "filecontent": base64.b64encode(content).decode("ascii"),
                "fileencoding": "base64",
                "overwriteifexists": 1,
            },
        )
        logger.info(
            "Uploaded %s %s to Dolibarr shipment %s",
            kind,
            filename,
            external_id,
        )
        return ErpResult(reference=_response_reference(response, filename))
