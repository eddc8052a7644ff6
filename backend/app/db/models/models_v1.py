from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    DateTime,
    Boolean,
    ForeignKey,
    Text,
    Enum,
    UniqueConstraint,
    Index,
    CheckConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.db.base import Base
from backend.app.db.models.core_types import (
    AdjustmentReason,
    AdjustmentStatus,
    CycleCountStatus,
    TransferStatus,
    MovementSource,
)

# BIGINT en Postgres, INTEGER (rowid auto-incrémenté) en SQLite
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AppendOnlyViolation(RuntimeError):
    pass


# ---------- REGISTRIES (fournis par les collaborateurs) ----------
class Location(Base):
    __tablename__ = "locations"
    code: Mapped[str] = mapped_column(String(16), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Product(Base):
    __tablename__ = "products"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    uom: Mapped[str] = mapped_column(String(32), default="unit", nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ---------- LEDGER ----------
class StockLevel(Base):
    __tablename__ = "stock_levels"
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True)
    location: Mapped[str] = mapped_column(ForeignKey("locations.code", ondelete="RESTRICT"), primary_key=True)

    qty_on_hand: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    reorder_point: Mapped[int | None] = mapped_column(Integer)
    reorder_quantity: Mapped[int | None] = mapped_column(Integer)
    minimum_stock: Mapped[int | None] = mapped_column(Integer)
    maximum_stock: Mapped[int | None] = mapped_column(Integer)

    # Jeton de concurrence optimiste : +1 à chaque applyDelta
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    product: Mapped[Product] = relationship()

    __table_args__ = (
        CheckConstraint("qty_on_hand >= 0", name="ck_stock_on_hand_nonneg"),
        CheckConstraint("qty_reserved >= 0", name="ck_stock_reserved_nonneg"),
        CheckConstraint("version >= 0", name="ck_stock_version_nonneg"),
    )

    @property
    def available(self) -> int:
        return self.qty_on_hand - self.qty_reserved


# ---------- ADJUSTMENTS ----------
class StockAdjustment(Base):
    __tablename__ = "stock_adjustments"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    adjustment_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    location: Mapped[str] = mapped_column(ForeignKey("locations.code", ondelete="RESTRICT"), nullable=False)
    reason: Mapped[AdjustmentReason] = mapped_column(
        Enum(AdjustmentReason, name="adjustment_reason"), nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text)
    status: Mapped[AdjustmentStatus] = mapped_column(
        Enum(AdjustmentStatus, name="adjustment_status"),
        default=AdjustmentStatus.pending,
        nullable=False,
        index=True,
    )
    # FK croisée avec cycle_count_sessions.adjustment_id : posée par ALTER
    cycle_count_session_id: Mapped[int | None] = mapped_column(
        ForeignKey(
            "cycle_count_sessions.id",
            ondelete="SET NULL",
            use_alter=True,
            name="fk_adjustment_cycle_count_session",
        )
    )

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    decided_by: Mapped[str | None] = mapped_column(String(64))
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[str | None] = mapped_column(String(500))
    refreshed_by: Mapped[str | None] = mapped_column(String(64))
    refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    lines: Mapped[list["StockAdjustmentLine"]] = relationship(
        back_populates="adjustment",
        cascade="all, delete-orphan",
        order_by="StockAdjustmentLine.line_number",
    )

    __table_args__ = (
        CheckConstraint(
            "(status != 'rejected') OR (rejection_reason IS NOT NULL)",
            name="ck_adjustment_rejection_reason",
        ),
        Index("ix_adjustments_location_created", "location", "created_at"),
    )


class StockAdjustmentLine(Base):
    __tablename__ = "stock_adjustment_lines"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    adjustment_id: Mapped[int] = mapped_column(
        ForeignKey("stock_adjustments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    product_sku: Mapped[str] = mapped_column(String(64), nullable=False)
    product_description: Mapped[str] = mapped_column(String(255), nullable=False)

    # Snapshot informatif pris à la soumission ; l'approbation relit le ledger
    current_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_version: Mapped[int] = mapped_column(Integer, nullable=False)
    adjusted_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    difference: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str | None] = mapped_column(String(500))

    adjustment: Mapped[StockAdjustment] = relationship(back_populates="lines")

    __table_args__ = (
        UniqueConstraint("adjustment_id", "line_number", name="uq_adjustment_line_number"),
        UniqueConstraint("adjustment_id", "product_id", name="uq_adjustment_line_product"),
        CheckConstraint("adjusted_quantity >= 0", name="ck_adjustment_line_adjusted_nonneg"),
    )


# ---------- CYCLE COUNTS ----------
class CycleCountSession(Base):
    __tablename__ = "cycle_count_sessions"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    location: Mapped[str] = mapped_column(ForeignKey("locations.code", ondelete="RESTRICT"), nullable=False)
    status: Mapped[CycleCountStatus] = mapped_column(
        Enum(CycleCountStatus, name="cycle_count_status"),
        default=CycleCountStatus.open,
        nullable=False,
        index=True,
    )
    notes: Mapped[str | None] = mapped_column(Text)

    adjustment_id: Mapped[int | None] = mapped_column(ForeignKey("stock_adjustments.id", ondelete="SET NULL"))
    adjustment_number: Mapped[str | None] = mapped_column(String(32))

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_by: Mapped[str | None] = mapped_column(String(64))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[str | None] = mapped_column(String(64))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    lines: Mapped[list["CycleCountLine"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="CycleCountLine.product_sku",
    )


class CycleCountLine(Base):
    __tablename__ = "cycle_count_lines"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("cycle_count_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    product_sku: Mapped[str] = mapped_column(String(64), nullable=False)
    product_description: Mapped[str] = mapped_column(String(255), nullable=False)

    # Gelé à la création, jamais exposé aux compteurs
    system_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    counted_quantity: Mapped[int | None] = mapped_column(Integer)
    variance: Mapped[int | None] = mapped_column(Integer)
    counted_by: Mapped[str | None] = mapped_column(String(64))
    counted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(String(500))

    session: Mapped[CycleCountSession] = relationship(back_populates="lines")

    __table_args__ = (
        UniqueConstraint("session_id", "product_id", name="uq_cycle_count_line_product"),
        CheckConstraint("counted_quantity IS NULL OR counted_quantity >= 0", name="ck_cycle_count_counted_nonneg"),
    )


# ---------- TRANSFERS ----------
class TransferRequest(Base):
    __tablename__ = "transfer_requests"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    transfer_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    from_location: Mapped[str] = mapped_column(ForeignKey("locations.code", ondelete="RESTRICT"), nullable=False)
    to_location: Mapped[str] = mapped_column(ForeignKey("locations.code", ondelete="RESTRICT"), nullable=False)
    status: Mapped[TransferStatus] = mapped_column(
        Enum(TransferStatus, name="transfer_status"),
        default=TransferStatus.pending,
        nullable=False,
        index=True,
    )
    order_id: Mapped[str | None] = mapped_column(String(64), index=True)
    notes: Mapped[str | None] = mapped_column(Text)

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    shipped_by: Mapped[str | None] = mapped_column(String(64))
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_by: Mapped[str | None] = mapped_column(String(64))
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[str | None] = mapped_column(String(64))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes_updated_by: Mapped[str | None] = mapped_column(String(64))
    notes_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    lines: Mapped[list["TransferRequestLine"]] = relationship(
        back_populates="transfer",
        cascade="all, delete-orphan",
        order_by="TransferRequestLine.line_number",
    )

    __table_args__ = (
        CheckConstraint("from_location != to_location", name="ck_transfer_locations_differ"),
    )


class TransferRequestLine(Base):
    __tablename__ = "transfer_request_lines"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    transfer_id: Mapped[int] = mapped_column(
        ForeignKey("transfer_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    product_sku: Mapped[str] = mapped_column(String(64), nullable=False)
    product_description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    received_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    transfer: Mapped[TransferRequest] = relationship(back_populates="lines")

    __table_args__ = (
        UniqueConstraint("transfer_id", "line_number", name="uq_transfer_line_number"),
        CheckConstraint("quantity > 0", name="ck_transfer_line_qty_pos"),
        CheckConstraint(
            "received_quantity >= 0 AND received_quantity <= quantity",
            name="ck_transfer_line_received_range",
        ),
    )


# ---------- AUDIT ----------
class StockMovement(Base):
    """Journal append-only : une ligne par delta appliqué au ledger."""

    __tablename__ = "stock_movements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    product_id: Mapped[str] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    location: Mapped[str] = mapped_column(ForeignKey("locations.code", ondelete="RESTRICT"), nullable=False)

    delta_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    resulting_on_hand: Mapped[int] = mapped_column(Integer, nullable=False)

    source_type: Mapped[MovementSource] = mapped_column(Enum(MovementSource, name="movement_source"), nullable=False)
    source_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_number: Mapped[str | None] = mapped_column(String(32))

    operation_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    notes: Mapped[str | None] = mapped_column(String(500))
    happened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        CheckConstraint("delta_quantity != 0", name="ck_stock_movement_delta_nonzero"),
        CheckConstraint("resulting_on_hand >= 0", name="ck_stock_movement_result_nonneg"),
        UniqueConstraint("operation_id", "sequence", name="uq_stock_movement_operation_seq"),
        Index("ix_stock_movements_product_location_time", "product_id", "location", "happened_at"),
        Index("ix_stock_movements_source", "source_type", "source_id"),
    )


@event.listens_for(StockMovement, "before_update")
def _refuse_movement_update(mapper, connection, target):
    raise AppendOnlyViolation(f"stock_movements is append-only (id={target.id})")


@event.listens_for(StockMovement, "before_delete")
def _refuse_movement_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"stock_movements is append-only (id={target.id})")


# ---------- SUPPORT ----------
class DocumentCounter(Base):
    __tablename__ = "document_counters"
    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    # sha256 hex de la clé client
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
