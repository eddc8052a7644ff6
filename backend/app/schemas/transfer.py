from datetime import datetime

from pydantic import BaseModel, Field

from backend.app.db.models.core_types import TransferStatus


class TransferLineCreate(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    quantity: int


class TransferCreate(BaseModel):
    from_location: str = Field(min_length=1, max_length=16)
    to_location: str = Field(min_length=1, max_length=16)
    order_id: str | None = Field(default=None, max_length=64)
    notes: str | None = None
    lines: list[TransferLineCreate] = Field(default_factory=list)


class ReceiptUpdate(BaseModel):
    received_quantity: int


class NotesUpdate(BaseModel):
    notes: str


class TransferLineRead(BaseModel):
    id: int
    line_number: int
    product_id: str
    product_sku: str
    product_description: str
    quantity: int
    received_quantity: int

    class Config:
        from_attributes = True


class TransferRead(BaseModel):
    id: int
    transfer_number: str
    from_location: str
    to_location: str
    status: TransferStatus
    order_id: str | None = None
    notes: str | None = None
    created_by: str
    created_at: datetime
    shipped_by: str | None = None
    shipped_at: datetime | None = None
    received_by: str | None = None
    received_at: datetime | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    notes_updated_by: str | None = None
    notes_updated_at: datetime | None = None
    lines: list[TransferLineRead]

    class Config:
        from_attributes = True


class TransferSummary(BaseModel):
    id: int
    transfer_number: str
    from_location: str
    to_location: str
    status: TransferStatus
    order_id: str | None = None
    line_count: int
    created_at: datetime
    shipped_at: datetime | None = None
    received_at: datetime | None = None
