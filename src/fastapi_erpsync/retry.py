"""Retry decisions with exponential backoff and jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import StrEnum

from fastapi_erpsync.config import ErpSyncConfig
from fastapi_erpsync.exceptions import AuthError, PermanentError


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    AUTH = "auth"


def classify_error(exc: BaseException | None) -> ErrorKind | None:
    """Map an exception to its retry class.

    Anything not known to be permanent or an auth problem is transient,
    so an unexpected failure leads to a retry rather than data loss.
    """
    if exc is None:
        return None
    if isinstance(exc, PermanentError):
        return ErrorKind.PERMANENT
    if isinstance(exc, AuthError):
        return ErrorKind.AUTH
    return ErrorKind.TRANSIENT


def compute_backoff_delay(
    attempt: int,
    backoff_seconds: float,
    max_backoff_seconds: float,
) -> float:
    """Compute the capped exponential delay, without jitter.

    delay = min(max_backoff_seconds, backoff_seconds * 2^(attempt - 1))
    """
    exponent = max(0, int(attempt) - 1)
    return float(min(max_backoff_seconds, backoff_seconds * (2**exponent)))


def compute_jitter(
    delay: float,
    jitter_ratio: float,
    rng: random.Random | None = None,
) -> float:
    """Draw jitter uniformly from [0, delay * jitter_ratio]."""
    window = max(0.0, delay * jitter_ratio)
    if window <= 0:
        return 0.0
    return (rng or random).uniform(0.0, window)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_seconds: float = 60
    max_backoff_seconds: float = 1200
    jitter_ratio: float = 0.1
    auth_max_attempts: int = 3

    @classmethod
    def from_config(cls, config: ErpSyncConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.retry_max_attempts,
            backoff_seconds=config.retry_backoff_seconds,
            max_backoff_seconds=config.retry_max_backoff_seconds,
            jitter_ratio=config.retry_jitter_ratio,
            auth_max_attempts=config.auth_max_attempts,
        )


class DecisionKind(StrEnum):
    SUCCESS = "success"
    RETRY = "retry"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class RetryDecision:
    kind: DecisionKind
    delay: float = 0.0
    reason: str | None = None


def decide(
    attempt: int,
    error_kind: ErrorKind | None,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> RetryDecision:
    """Decide what happens after ``attempt`` finished with ``error_kind``.

    ``error_kind`` of None means the attempt succeeded.
    """
    if error_kind is None:
        return RetryDecision(DecisionKind.SUCCESS)
    if error_kind is ErrorKind.PERMANENT:
        return RetryDecision(DecisionKind.TERMINAL, reason="permanent_error")
    if attempt >= policy.max_attempts:
        return RetryDecision(
            DecisionKind.TERMINAL, reason="max_attempts_exhausted"
        )
    if error_kind is ErrorKind.AUTH and attempt >= policy.auth_max_attempts:
        return RetryDecision(
            DecisionKind.TERMINAL, reason="auth_attempts_exhausted"
        )

    delay = compute_backoff_delay(
        attempt, policy.backoff_seconds, policy.max_backoff_seconds
    )
    delay += compute_jitter(delay, policy.jitter_ratio, rng)
    return RetryDecision(DecisionKind.RETRY, delay=delay, reason=error_kind)
