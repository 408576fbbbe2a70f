"""Structured pipeline events."""

from __future__ import annotations

import logging
from collections.abc import Mapping

logger = logging.getLogger(__name__)

_WARNING_EVENTS = frozenset(
    {"push_failed", "push_partial", "circuit_opened", "cycle_skipped"}
)
_ERROR_EVENTS = frozenset({"sync_failed"})


def format_fields(fields: Mapping[str, object]) -> str:
    return " ".join(f"{key}={value}" for key, value in fields.items())


class LoggingEventSink:
    """Render events as ``event key=value ...`` log lines."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    def emit(self, event: str, fields: Mapping[str, object]) -> None:
        if event in _ERROR_EVENTS:
            level = logging.ERROR
        elif event in _WARNING_EVENTS:
            level = logging.WARNING
        else:
            level = logging.INFO
        self.log.log(
            level,
            "%s %s",
            event,
            format_fields(fields),
            extra={"sync_event": event, "sync_fields": dict(fields)},
        )
