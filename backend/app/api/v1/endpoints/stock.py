from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_coordinator
from backend.app.schemas.common import Page
from backend.app.schemas.stock_level import InventorySummaryRead, ReorderSettingsUpdate, StockLevelRead
from backend.services.coordinator import ReconciliationCoordinator

router = APIRouter(prefix="/stock")


@router.get("", response_model=Page[StockLevelRead])
def get_stock(
    location: str | None = None,
    product_id: str | None = None,
    low_stock_only: bool = False,
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Stock (READ ONLY)
    - qty_on_hand ne bouge que via les workflows (ajustement, transfert)
    - stock_status est calculé, jamais stocké
    """
    return coordinator.list_stock_levels(
        location=location,
        product_id=product_id,
        low_stock_only=low_stock_only,
        page=page,
        page_size=page_size,
    )


@router.get("/summary", response_model=InventorySummaryRead)
def get_summary(coordinator: ReconciliationCoordinator = Depends(get_coordinator)):
    return coordinator.inventory_summary()


@router.get("/{product_id}/{location}", response_model=StockLevelRead)
def get_stock_level(
    product_id: str,
    location: str,
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.get_stock_level(product_id, location)


@router.put("/{product_id}/{location}/reorder-settings", response_model=StockLevelRead)
def update_reorder_settings(
    product_id: str,
    location: str,
    payload: ReorderSettingsUpdate,
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.update_reorder_settings(product_id, location, payload)
