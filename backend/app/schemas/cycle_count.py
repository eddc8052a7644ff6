"""
Deux projections d'une même session de comptage :

- vue compteur : ne contient PAS system_quantity ni variance (comptage à l'aveugle)
- vue revue    : inclut les deux, servie uniquement une fois la session COMPLETED
"""

from datetime import datetime

from pydantic import BaseModel, Field

from backend.app.db.models.core_types import CycleCountStatus


class CycleCountCreate(BaseModel):
    location: str = Field(min_length=1, max_length=16)
    product_ids: list[str] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=2000)


class CountEntry(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    counted_quantity: int
    notes: str | None = Field(default=None, max_length=500)


# ---------- Vue compteur ----------
class CycleCountLineCounterView(BaseModel):
    id: int
    product_id: str
    product_sku: str
    product_description: str
    counted_quantity: int | None = None
    counted_by: str | None = None
    counted_at: datetime | None = None
    notes: str | None = None

    class Config:
        from_attributes = True


class CycleCountCounterView(BaseModel):
    id: int
    session_number: str
    location: str
    status: CycleCountStatus
    notes: str | None = None
    line_count: int
    counted_line_count: int
    created_by: str
    created_at: datetime
    lines: list[CycleCountLineCounterView]


# ---------- Vue revue (rapport d'écarts) ----------
class CycleCountLineReviewView(CycleCountLineCounterView):
    system_quantity: int
    variance: int | None = None


class CycleCountReviewView(BaseModel):
    id: int
    session_number: str
    location: str
    status: CycleCountStatus
    notes: str | None = None
    adjustment_id: int | None = None
    adjustment_number: str | None = None
    created_by: str
    created_at: datetime
    completed_by: str | None = None
    completed_at: datetime | None = None
    lines: list[CycleCountLineReviewView]
    lines_with_variance: int
    net_variance: int


class CycleCountSummary(BaseModel):
    id: int
    session_number: str
    location: str
    status: CycleCountStatus
    line_count: int
    counted_line_count: int
    adjustment_number: str | None = None
    created_by: str
    created_at: datetime
    completed_at: datetime | None = None


class CycleCountConversion(BaseModel):
    session_id: int
    adjustment_id: int | None = None
    adjustment_number: str | None = None
    lines_adjusted: int
