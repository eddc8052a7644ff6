from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_coordinator
from backend.app.db.models.core_types import MovementSource
from backend.app.schemas.common import Page
from backend.app.schemas.movement import LedgerVerification, OnHandReconstruction, StockMovementRead
from backend.services.coordinator import ReconciliationCoordinator

router = APIRouter(prefix="/stock-movements")


@router.get("", response_model=Page[StockMovementRead])
def list_movements(
    product_id: str | None = None,
    location: str | None = None,
    source_type: MovementSource | None = None,
    source_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """Journal append-only, du plus récent au plus ancien."""
    return coordinator.list_movements(
        product_id=product_id,
        location=location,
        source_type=source_type,
        source_id=source_id,
        start=start,
        end=end,
        page=page,
        page_size=page_size,
    )


@router.get("/reconstruct", response_model=OnHandReconstruction)
def reconstruct_on_hand(
    product_id: str,
    location: str,
    as_of: datetime | None = None,
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.reconstruct_on_hand(product_id, location, as_of)


@router.get("/verify", response_model=LedgerVerification)
def verify_ledger(
    location: str | None = None,
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.verify_ledger(location)
