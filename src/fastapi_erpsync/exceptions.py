"""Sync pipeline exceptions and their HTTP mapping."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class ErpSyncError(Exception):
    """Base class for every error raised by the sync pipeline."""


class ValidationError(ErpSyncError):
    """Confirmation payload rejected at creation time."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = list(errors or [])
        super().__init__(message)


class ConfirmationNotFoundError(ErpSyncError):
    def __init__(self, confirmation_id: str) -> None:
        self.confirmation_id = confirmation_id
        super().__init__(f"Confirmation {confirmation_id} not found")


class StaleStateError(ErpSyncError):
    """Compare-and-swap lost: the record changed since it was read."""


class JobClaimLostError(StaleStateError):
    """The job was reclaimed by another worker after its lease expired."""


class InvalidTransitionError(ErpSyncError):
    """The requested sync state transition is not part of the graph."""


class DuplicateJobError(ErpSyncError):
    """An equivalent or sooner job already exists; enqueue was a no-op."""


class ConfirmationSuspendedError(ErpSyncError):
    def __init__(self, confirmation_id: str) -> None:
        self.confirmation_id = confirmation_id
        super().__init__(f"Confirmation {confirmation_id} is suspended")


class ErpError(ErpSyncError):
    """Failure reported by (or while talking to) the ERP."""


class TransientError(ErpError):
    """Network trouble, timeouts and 5xx answers. Always retryable."""


class PermanentError(ErpError):
    """The ERP rejected the data. Never retryable."""


class AuthError(ErpError):
    """Credentials refused. Retryable a few times, then terminal."""


class VerificationHashMismatchError(PermanentError):
    """Stored verification hash no longer matches the payload."""


def register_exception_handlers(app: FastAPI) -> None:
    """Register sync pipeline exception handlers on a FastAPI app.

    More specific handlers must be registered first so FastAPI
    matches them before the generic ErpSyncError handler.

    Handler order (most specific first):
    1. ConfirmationNotFoundError → 404
    2. ValidationError → 422
    3. ConfirmationSuspendedError → 409
    4. StaleStateError / InvalidTransitionError / DuplicateJobError → 409
    5. ErpError → 502
    6. ErpSyncError → 400 (catch-all)
    """

    @app.exception_handler(ConfirmationNotFoundError)
    async def _not_found(
        request: Request,
        exc: ConfirmationNotFoundError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"detail": str(exc), "code": "not_found"},
        )

    @app.exception_handler(ValidationError)
    async def _validation(
        request: Request,
        exc: ValidationError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "detail": str(exc),
                "code": "validation_error",
                "errors": exc.errors,
            },
        )

    @app.exception_handler(ConfirmationSuspendedError)
    async def _suspended(
        request: Request,
        exc: ConfirmationSuspendedError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "code": "suspended"},
        )

    async def _conflict(request: Request, exc: ErpSyncError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "code": "state_conflict"},
        )

    for exc_class in (
        StaleStateError,
        InvalidTransitionError,
        DuplicateJobError,
    ):
        app.add_exception_handler(exc_class, _conflict)

    @app.exception_handler(ErpError)
    async def _erp_error(
        request: Request,
        exc: ErpError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={"detail": str(exc), "code": "erp_error"},
        )

    @app.exception_handler(ErpSyncError)
    async def _sync_error(
        request: Request,
        exc: ErpSyncError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc), "code": "sync_error"},
        )
