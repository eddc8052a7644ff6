import enum


class AdjustmentReason(str, enum.Enum):
    initial_count = "INITIAL_COUNT"
    cycle_count = "CYCLE_COUNT"
    damaged = "DAMAGED"
    expired = "EXPIRED"
    found = "FOUND"
    lost = "LOST"
    data_correction = "DATA_CORRECTION"
    other = "OTHER"


class AdjustmentStatus(str, enum.Enum):
    pending = "PENDING"
    approved = "APPROVED"
    rejected = "REJECTED"
    cancelled = "CANCELLED"


class CycleCountStatus(str, enum.Enum):
    open = "OPEN"
    completed = "COMPLETED"
    cancelled = "CANCELLED"


class TransferStatus(str, enum.Enum):
    pending = "PENDING"
    in_transit = "IN_TRANSIT"
    received = "RECEIVED"
    cancelled = "CANCELLED"


class MovementSource(str, enum.Enum):
    adjustment = "ADJUSTMENT"
    transfer_ship = "TRANSFER_SHIP"
    transfer_receive = "TRANSFER_RECEIVE"
    cycle_count_correction = "CYCLE_COUNT_CORRECTION"


class StockStatus(str, enum.Enum):
    in_stock = "IN_STOCK"
    low_stock = "LOW_STOCK"
    out_of_stock = "OUT_OF_STOCK"
    overstock = "OVERSTOCK"
