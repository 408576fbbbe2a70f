"""Dolibarr ERP client tests over a mocked HTTP transport."""

import base64
import json
import re

import httpx
import pytest

from conftest import make_payload
from fastapi_erpsync.adapter import ErpAdapter
from fastapi_erpsync.contrib.dolibarr import (
    DolibarrErpClient,
    attachment_filename,
)
from fastapi_erpsync.exceptions import (
    AuthError,
    PermanentError,
    TransientError,
)
from fastapi_erpsync.memory import InMemoryConfirmationStore


class _Blobs:
    def __init__(self, blobs: dict[str, bytes]) -> None:
        self.blobs = blobs

    async def read(self, handle: str) -> bytes:
        try:
            return self.blobs[handle]
        except KeyError as e:
            raise FileNotFoundError(handle) from e


def _client(handler, blobs=None) -> DolibarrErpClient:
    return DolibarrErpClient(
        "https://erp.example.com/api/index.php",
        "key-123",
        _Blobs(blobs or {}),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


async def test_status_update_request() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=42)

    client = _client(handler)
    result = await client.update_shipment_status(
        "42", "delivered", "Delivered to reception", idempotency_key="h:status"
    )

    [request] = requests
    assert request.method == "PUT"
    assert request.url.path == "/api/index.php/shipments/42"
    assert request.headers["DOLAPIKEY"] == "key-123"
    assert request.headers["Idempotency-Key"] == "h:status"
    assert json.loads(request.content) == {
        "status": 3,
        "note_private": "Delivered to reception",
    }
    assert result.reference == "42"


async def test_upload_request() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json="signature_abcdef.png")

    client = _client(handler, {"sig/s1.png": b"\x89PNG"})
    result = await client.upload_attachment(
        "42",
        "sig/s1.png",
        "signature",
        idempotency_key="abcdef0123456789ffff:signature:sig/s1.png",
    )

    [request] = requests
    assert request.method == "POST"
    assert request.url.path == "/api/index.php/documents/upload"
    body = json.loads(request.content)
    assert body["modulepart"] == "expedition"
    assert body["ref"] == "42"
    assert body["overwriteifexists"] == 1
    assert body["filename"] == attachment_filename(
        "signature",
        "sig/s1.png",
        "abcdef0123456789ffff:signature:sig/s1.png",
    )
    assert re.fullmatch(r"signature_[0-9a-f]{16}\.png", body["filename"])
    assert base64.b64decode(body["filecontent"]) == b"\x89PNG"
    assert result.reference == "signature_abcdef.png"


def test_attachment_filename_is_stable() -> None:
    key = "0123456789abcdef9999:photo:p/1.jpg"
    assert attachment_filename("photo", "p/1.jpg", key) == (
        attachment_filename("photo", "p/1.jpg", key)
    )
    assert attachment_filename("photo", "p/blob", key).endswith(".bin")


def test_attachment_filenames_differ_per_photo() -> None:
    first = attachment_filename("photo", "p/1.jpg", "abc:photo:p/1.jpg")
    second = attachment_filename("photo", "p/2.jpg", "abc:photo:p/2.jpg")

    assert first != second


async def test_push_keeps_every_photo() -> None:
    documents: dict[str, bytes] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            body = json.loads(request.content)
            documents[body["filename"]] = base64.b64decode(
                body["filecontent"]
            )
        return httpx.Response(200, json=1)

    blobs = {
        "signatures/SHP-1001.png": b"sig",
        "photos/a.jpg": b"photo-a",
        "photos/b.jpg": b"photo-b",
    }
    store = InMemoryConfirmationStore()
    record = await store.create(
        make_payload(photo_handles=["photos/a.jpg", "photos/b.jpg"])
    )
    adapter = ErpAdapter(_client(handler, blobs))

    outcome = await adapter.push(record)

    assert outcome.succeeded
    assert sorted(documents.values()) == [b"photo-a", b"photo-b", b"sig"]


async def test_upload_without_json_body_uses_filename() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="OK")

    client = _client(handler, {"p/1.jpg": b"jpg"})
    result = await client.upload_attachment(
        "42", "p/1.jpg", "photo", idempotency_key="abc:photo:p/1.jpg"
    )

    assert result.reference == attachment_filename(
        "photo", "p/1.jpg", "abc:photo:p/1.jpg"
    )


@pytest.mark.parametrize(
    ("status_code", "error"),
    [
        (401, AuthError),
        (403, AuthError),
        (404, PermanentError),
        (422, PermanentError),
        (408, TransientError),
        (429, TransientError),
        (500, TransientError),
        (503, TransientError),
    ],
)
async def test_http_errors_are_classified(status_code, error) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, text="nope")

    client = _client(handler)

    with pytest.raises(error):
        await client.update_shipment_status(
            "42", "delivered", "", idempotency_key="k"
        )


async def test_transport_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)

    with pytest.raises(TransientError):
        await client.update_shipment_status(
            "42", "delivered", "", idempotency_key="k"
        )


async def test_timeout_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = _client(handler)

    with pytest.raises(TransientError, match="timed out"):
        await client.update_shipment_status(
            "42", "delivered", "", idempotency_key="k"
        )


async def test_unknown_status_is_permanent() -> None:
    client = _client(lambda request: httpx.Response(200))

    with pytest.raises(PermanentError):
        await client.update_shipment_status(
            "42", "teleported", "", idempotency_key="k"
        )


async def test_missing_blob_is_permanent() -> None:
    client = _client(lambda request: httpx.Response(200))

    with pytest.raises(PermanentError, match="missing"):
        await client.upload_attachment(
            "42", "gone.png", "photo", idempotency_key="k"
        )


async def test_from_config() -> None:
    from fastapi_erpsync.config import ErpSyncConfig

    config = ErpSyncConfig(
        dolibarr_url="https://erp.example.com/api/index.php/",
        dolibarr_api_key="secret",
    )
    async with DolibarrErpClient.from_config(config, _Blobs({})) as client:
        assert client.base_url == "https://erp.example.com/api/index.php"
        assert client.api_key == "secret"
