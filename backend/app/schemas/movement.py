from datetime import datetime

from pydantic import BaseModel

from backend.app.db.models.core_types import MovementSource


class StockMovementRead(BaseModel):
    id: int
    product_id: str
    location: str
    delta_quantity: int
    resulting_on_hand: int
    source_type: MovementSource
    source_id: int
    source_number: str | None = None
    operation_id: str
    sequence: int
    notes: str | None = None
    happened_at: datetime
    created_by: str

    class Config:
        from_attributes = True


class OnHandReconstruction(BaseModel):
    product_id: str
    location: str
    as_of: datetime | None = None
    movement_count: int
    reconstructed_on_hand: int
    ledger_on_hand: int | None = None


class LedgerDiscrepancyRead(BaseModel):
    product_id: str
    location: str
    ledger_on_hand: int
    movement_on_hand: int
    gap: int

    class Config:
        from_attributes = True


class LedgerVerification(BaseModel):
    rows_checked: int
    consistent: bool
    discrepancies: list[LedgerDiscrepancyRead]
