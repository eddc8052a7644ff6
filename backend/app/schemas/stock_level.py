from datetime import datetime

from pydantic import BaseModel

from backend.app.db.models.core_types import StockStatus


class StockLevelRead(BaseModel):
    product_id: str
    location: str

    qty_on_hand: int
    qty_reserved: int
    available: int

    reorder_point: int | None = None
    reorder_quantity: int | None = None
    minimum_stock: int | None = None
    maximum_stock: int | None = None

    version: int
    stock_status: StockStatus
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class ReorderSettingsUpdate(BaseModel):
    """Champs absents = inchangés ; null = seuil effacé."""

    reorder_point: int | None = None
    reorder_quantity: int | None = None
    minimum_stock: int | None = None
    maximum_stock: int | None = None


class InventorySummaryRead(BaseModel):
    total_products: int
    below_reorder_point: int
    pending_adjustments: int
    movements_today: int

    class Config:
        from_attributes = True
