"""Logging event sink tests."""

import logging

from fastapi_erpsync.events import LoggingEventSink, format_fields


def test_format_fields() -> None:
    assert format_fields({"a": 1, "b": "x"}) == "a=1 b=x"


def test_info_event(caplog) -> None:
    sink = LoggingEventSink()

    with caplog.at_level(logging.INFO, logger="fastapi_erpsync.events"):
        sink.emit("push_succeeded", {"confirmation_id": "c-1", "attempt": 1})

    [record] = caplog.records
    assert record.levelno == logging.INFO
    assert record.getMessage() == (
        "push_succeeded confirmation_id=c-1 attempt=1"
    )
    assert record.sync_event == "push_succeeded"
    assert record.sync_fields == {"confirmation_id": "c-1", "attempt": 1}


def test_event_levels(caplog) -> None:
    sink = LoggingEventSink()

    with caplog.at_level(logging.INFO, logger="fastapi_erpsync.events"):
        sink.emit("circuit_opened", {"failures": 10})
        sink.emit("sync_failed", {"confirmation_id": "c-1"})

    assert [r.levelno for r in caplog.records] == [
        logging.WARNING,
        logging.ERROR,
    ]


def test_custom_logger(caplog) -> None:
    sink = LoggingEventSink(logging.getLogger("erp.audit"))

    with caplog.at_level(logging.INFO, logger="erp.audit"):
        sink.emit("job_claimed", {})

    assert caplog.records[0].name == "erp.audit"
