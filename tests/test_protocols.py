"""Protocol conformance tests."""

from conftest import FakeErpClient, RecordingEventSink
from fastapi_erpsync.contrib.filesystem import FilesystemBlobStorage
from fastapi_erpsync.events import LoggingEventSink
from fastapi_erpsync.memory import (
    InMemoryConfirmationStore,
    InMemorySyncJobQueue,
)
from fastapi_erpsync.protocols import (
    BlobStorage,
    ConfirmationStore,
    ErpClient,
    EventSink,
    SyncJobQueue,
)


class _IncompleteErpClient:
    """Missing upload_attachment; should NOT satisfy protocol."""

    async def update_shipment_status(
        self, external_id, status, notes, *, idempotency_key
    ):
        return None


def test_memory_backends_satisfy_protocols() -> None:
    assert isinstance(InMemoryConfirmationStore(), ConfirmationStore)
    assert isinstance(InMemorySyncJobQueue(), SyncJobQueue)


def test_fake_erp_client_satisfies_protocol() -> None:
    assert isinstance(FakeErpClient(), ErpClient)


def test_incomplete_client_does_not_satisfy_protocol() -> None:
    assert not isinstance(_IncompleteErpClient(), ErpClient)


def test_event_sinks_satisfy_protocol() -> None:
    assert isinstance(LoggingEventSink(), EventSink)
    assert isinstance(RecordingEventSink(), EventSink)


def test_filesystem_storage_satisfies_protocol(tmp_path) -> None:
    assert isinstance(FilesystemBlobStorage(tmp_path), BlobStorage)


def test_store_protocol_methods() -> None:
    expected_methods = {
        "create",
        "get",
        "transition",
        "list_pending",
        "resubmit",
        "set_suspended",
        "audit_log",
        "count_by_state",
    }
    for method_name in expected_methods:
        assert hasattr(ConfirmationStore, method_name), (
            f"ConfirmationStore missing method {method_name}"
        )
