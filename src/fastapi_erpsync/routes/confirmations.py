"""Delivery confirmation endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from fastapi_erpsync.dependencies import get_orchestrator
from fastapi_erpsync.orchestrator import SyncOrchestrator
from fastapi_erpsync.schemas import (
    AuditEntryResponse,
    ConfirmationResponse,
    CreateConfirmationRequest,
)

router = APIRouter()


@router.post(
    "/confirmations",
    response_model=ConfirmationResponse,
    status_code=201,
)
async def create_confirmation(
    body: CreateConfirmationRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ConfirmationResponse:
    """Store a confirmation and schedule its ERP sync."""
    record = await orchestrator.submit(body.model_dump())
    return ConfirmationResponse.from_record(record)


@router.get(
    "/confirmations/{confirmation_id}",
    response_model=ConfirmationResponse,
)
async def get_confirmation(
    confirmation_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ConfirmationResponse:
    record = await orchestrator.store.get(confirmation_id)
    return ConfirmationResponse.from_record(record)


@router.get(
    "/confirmations/{confirmation_id}/audit",
    response_model=list[AuditEntryResponse],
)
async def get_confirmation_audit(
    confirmation_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> list[AuditEntryResponse]:
    """State change history, oldest first."""
    entries = await orchestrator.store.audit_log(confirmation_id)
    return [AuditEntryResponse.from_entry(entry) for entry in entries]


@router.post(
    "/confirmations/{confirmation_id}/suspend",
    response_model=ConfirmationResponse,
)
async def suspend_confirmation(
    confirmation_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ConfirmationResponse:
    """Hold a confirmation out of sync until resumed."""
    record = await orchestrator.suspend(confirmation_id)
    return ConfirmationResponse.from_record(record)


@router.post(
    "/confirmations/{confirmation_id}/resume",
    response_model=ConfirmationResponse,
)
async def resume_confirmation(
    confirmation_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ConfirmationResponse:
    record = await orchestrator.resume(confirmation_id)
    return ConfirmationResponse.from_record(record)


@router.post(
    "/confirmations/{confirmation_id}/resubmit",
    response_model=ConfirmationResponse,
)
async def resubmit_confirmation(
    confirmation_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ConfirmationResponse:
    """Send a failed confirmation back through the sync pipeline."""
    record = await orchestrator.resubmit(confirmation_id)
    return ConfirmationResponse.from_record(record)
