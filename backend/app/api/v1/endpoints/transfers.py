from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Query, status

from backend.app.api.deps import get_actor, get_coordinator
from backend.app.db.models.core_types import TransferStatus
from backend.app.schemas.common import Page
from backend.app.schemas.transfer import (
    NotesUpdate,
    ReceiptUpdate,
    TransferCreate,
    TransferRead,
    TransferSummary,
)
from backend.services.coordinator import ReconciliationCoordinator

router = APIRouter(prefix="/transfers")


@router.post("", response_model=TransferRead, status_code=status.HTTP_201_CREATED)
def create_transfer(
    payload: TransferCreate,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return coordinator.create_transfer(payload, actor, idempotency_key=idempotency_key)


@router.get("", response_model=Page[TransferSummary])
def list_transfers(
    status_filter: TransferStatus | None = Query(default=None, alias="status"),
    order_id: str | None = None,
    location: str | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.list_transfers(
        status=status_filter,
        order_id=order_id,
        location=location,
        page=page,
        page_size=page_size,
    )


@router.get("/{transfer_id}", response_model=TransferRead)
def get_transfer(transfer_id: int, coordinator: ReconciliationCoordinator = Depends(get_coordinator)):
    return coordinator.get_transfer(transfer_id)


@router.post("/{transfer_id}/ship", response_model=TransferRead)
def ship_transfer(
    transfer_id: int,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return coordinator.ship_transfer(transfer_id, actor, idempotency_key=idempotency_key)


@router.put("/{transfer_id}/lines/{line_id}/receipt", response_model=TransferRead)
def record_receipt(
    transfer_id: int,
    line_id: int,
    payload: ReceiptUpdate,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return coordinator.record_receipt(
        transfer_id,
        line_id,
        payload.received_quantity,
        actor,
        idempotency_key=idempotency_key,
    )


@router.post("/{transfer_id}/complete", response_model=TransferRead)
def complete_transfer(
    transfer_id: int,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.complete_transfer(transfer_id, actor)


@router.post("/{transfer_id}/cancel", response_model=TransferRead)
def cancel_transfer(
    transfer_id: int,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.cancel_transfer(transfer_id, actor)


@router.patch("/{transfer_id}/notes", response_model=TransferRead)
def update_notes(
    transfer_id: int,
    payload: NotesUpdate,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.update_transfer_notes(transfer_id, payload.notes, actor)
