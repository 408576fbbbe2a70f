"""Cross-job circuit breaker guarding the ERP during outages."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum

from fastapi_erpsync.config import ErpSyncConfig
from fastapi_erpsync.protocols import EventSink
from fastapi_erpsync.types import utcnow

logger = logging.getLogger(__name__)


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class SyncCircuitBreaker:
    """Pause dispatching after too many consecutive failures.

    Failures are counted across all jobs inside a sliding window; any
    success resets the count. Once ``failure_threshold`` is reached the
    circuit opens for ``cooldown_seconds``, then lets a single probe
    through (half-open) before closing again.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 10,
        window_seconds: float = 300,
        cooldown_seconds: float = 120,
        enabled: bool = True,
        events: EventSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.failure_threshold = max(1, int(failure_threshold))
        self.window = timedelta(seconds=max(1.0, float(window_seconds)))
        self.cooldown = timedelta(seconds=max(1.0, float(cooldown_seconds)))
        self.enabled = bool(enabled)
        self.events = events
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at: datetime | None = None
        self._failures: deque[datetime] = deque()
        self._probe_in_flight = False

    @classmethod
    def from_config(
        cls,
        config: ErpSyncConfig,
        *,
        events: EventSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> SyncCircuitBreaker:
        return cls(
            failure_threshold=config.circuit_failure_threshold,
            window_seconds=config.circuit_window_seconds,
            cooldown_seconds=config.circuit_cooldown_seconds,
            enabled=config.circuit_enabled,
            events=events,
            clock=clock,
        )

    def _emit(self, event: str, **fields: object) -> None:
        if self.events is not None:
            self.events.emit(event, fields)

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    def _open(self, now: datetime) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._probe_in_flight = False
        logger.warning(
            "ERP circuit opened after %d failures; pausing dispatch for %ss",
            len(self._failures),
            int(self.cooldown.total_seconds()),
        )
        self._emit(
            "circuit_opened",
            failures=len(self._failures),
            cooldown_seconds=int(self.cooldown.total_seconds()),
        )

    def _close(self) -> None:
        previous = self._state
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._failures.clear()
        self._probe_in_flight = False
        if previous is not CircuitState.CLOSED:
            logger.info("ERP circuit closed")
            self._emit("circuit_closed")

    def state(self, now: datetime | None = None) -> CircuitState:
        """Current state; an expired cooldown moves open to half-open."""
        if not self.enabled:
            return CircuitState.CLOSED
        now = now or self._clock()
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and now - self._opened_at >= self.cooldown
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info("ERP circuit half-open; sending a probe")
            self._emit("circuit_half_open")
        return self._state

    def allow_dispatch(self, now: datetime | None = None) -> bool:
        return self.state(now) is not CircuitState.OPEN

    def dispatch_limit(
        self, max_batch: int, now: datetime | None = None
    ) -> int:
        """How many jobs may be claimed now.

        Half-open admits one probe at a time: the slot stays taken until
        the probe is recorded or ``end_probe`` is called.
        """
        state = self.state(now)
        if state is CircuitState.OPEN:
            return 0
        if state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                return 0
            self._probe_in_flight = True
            return 1
        return max_batch

    def end_probe(self) -> None:
        """Give back the half-open slot taken by ``dispatch_limit``."""
        self._probe_in_flight = False

    def record_success(self, now: datetime | None = None) -> None:
        if not self.enabled:
            return
        if self._state is CircuitState.OPEN:
            # late result of a job dispatched before the circuit opened
            return
        self._close()

    def record_failure(self, now: datetime | None = None) -> None:
        if not self.enabled:
            return
        now = now or self._clock()
        if self._state is CircuitState.OPEN:
            return
        self._failures.append(now)
        if self._state is CircuitState.HALF_OPEN:
            self._open(now)
            return
        self._prune(now)
        if len(self._failures) >= self.failure_threshold:
            self._open(now)

    def snapshot(self, now: datetime | None = None) -> dict:
        now = now or self._clock()
        state = self.state(now)
        self._prune(now)
        opened_seconds_ago = 0.0
        if state is CircuitState.OPEN and self._opened_at is not None:
            opened_seconds_ago = (now - self._opened_at).total_seconds()
        return {
            "state": str(state),
            "enabled": self.enabled,
            "failures": len(self._failures),
            "failure_threshold": self.failure_threshold,
            "opened_seconds_ago": round(max(0.0, opened_seconds_ago), 2),
        }
