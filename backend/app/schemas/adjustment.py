from datetime import datetime

from pydantic import BaseModel, Field

from backend.app.db.models.core_types import AdjustmentReason, AdjustmentStatus


# Les bornes métier (quantités >= 0, lignes non vides) sont validées par le
# service, pour que l'API et les appels directs lèvent la même ValidationError.
class AdjustmentLineCreate(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    adjusted_quantity: int
    notes: str | None = Field(default=None, max_length=500)


class AdjustmentCreate(BaseModel):
    location: str = Field(min_length=1, max_length=16)
    reason: AdjustmentReason
    notes: str | None = Field(default=None, max_length=2000)
    lines: list[AdjustmentLineCreate] = Field(default_factory=list)


class AdjustmentReject(BaseModel):
    reason: str = Field(default="", max_length=500)


class AdjustmentLineRead(BaseModel):
    id: int
    line_number: int
    product_id: str
    product_sku: str
    product_description: str
    current_quantity: int
    snapshot_version: int
    adjusted_quantity: int
    difference: int
    notes: str | None = None

    class Config:
        from_attributes = True


class AdjustmentRead(BaseModel):
    id: int
    adjustment_number: str
    location: str
    reason: AdjustmentReason
    notes: str | None = None
    status: AdjustmentStatus
    cycle_count_session_id: int | None = None
    created_by: str
    created_at: datetime
    decided_by: str | None = None
    decided_at: datetime | None = None
    rejection_reason: str | None = None
    refreshed_by: str | None = None
    refreshed_at: datetime | None = None
    lines: list[AdjustmentLineRead]

    class Config:
        from_attributes = True


class AdjustmentSummary(BaseModel):
    id: int
    adjustment_number: str
    location: str
    reason: AdjustmentReason
    status: AdjustmentStatus
    line_count: int
    created_by: str
    created_at: datetime
    decided_at: datetime | None = None
