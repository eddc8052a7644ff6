"""create reconciliation schema

Revision ID: 3f1c9a7d2b10
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1c9a7d2b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Les enums stockent le NOM des membres (cf. core_types)
ADJUSTMENT_REASON = sa.Enum(
    "initial_count", "cycle_count", "damaged", "expired", "found", "lost", "data_correction", "other",
    name="adjustment_reason",
)
ADJUSTMENT_STATUS = sa.Enum("pending", "approved", "rejected", "cancelled", name="adjustment_status")
CYCLE_COUNT_STATUS = sa.Enum("open", "completed", "cancelled", name="cycle_count_status")
TRANSFER_STATUS = sa.Enum("pending", "in_transit", "received", "cancelled", name="transfer_status")
MOVEMENT_SOURCE = sa.Enum(
    "adjustment", "transfer_ship", "transfer_receive", "cycle_count_correction",
    name="movement_source",
)


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # --- Référentiels
    op.create_table(
        "locations",
        sa.Column("code", sa.String(16), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "products",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("uom", sa.String(32), nullable=False, server_default="unit"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    # --- Ledger
    op.create_table(
        "stock_levels",
        sa.Column("product_id", sa.String(64), sa.ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("location", sa.String(16), sa.ForeignKey("locations.code", ondelete="RESTRICT"), primary_key=True),
        sa.Column("qty_on_hand", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reorder_point", sa.Integer()),
        sa.Column("reorder_quantity", sa.Integer()),
        sa.Column("minimum_stock", sa.Integer()),
        sa.Column("maximum_stock", sa.Integer()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        _ts("updated_at", nullable=False),
        sa.CheckConstraint("qty_on_hand >= 0", name="ck_stock_on_hand_nonneg"),
        sa.CheckConstraint("qty_reserved >= 0", name="ck_stock_reserved_nonneg"),
        sa.CheckConstraint("version >= 0", name="ck_stock_version_nonneg"),
    )

    # --- Ajustements
    op.create_table(
        "stock_adjustments",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("adjustment_number", sa.String(32), nullable=False, unique=True),
        sa.Column("location", sa.String(16), sa.ForeignKey("locations.code", ondelete="RESTRICT"), nullable=False),
        sa.Column("reason", ADJUSTMENT_REASON, nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("status", ADJUSTMENT_STATUS, nullable=False),
        sa.Column("cycle_count_session_id", sa.BigInteger()),
        sa.Column("created_by", sa.String(64), nullable=False),
        _ts("created_at", nullable=False),
        sa.Column("decided_by", sa.String(64)),
        _ts("decided_at"),
        sa.Column("rejection_reason", sa.String(500)),
        sa.Column("refreshed_by", sa.String(64)),
        _ts("refreshed_at"),
        sa.CheckConstraint(
            "(status != 'rejected') OR (rejection_reason IS NOT NULL)",
            name="ck_adjustment_rejection_reason",
        ),
    )
    op.create_index("ix_stock_adjustments_status", "stock_adjustments", ["status"])
    op.create_index("ix_adjustments_location_created", "stock_adjustments", ["location", "created_at"])

    op.create_table(
        "stock_adjustment_lines",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "adjustment_id",
            sa.BigInteger(),
            sa.ForeignKey("stock_adjustments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.String(64), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_sku", sa.String(64), nullable=False),
        sa.Column("product_description", sa.String(255), nullable=False),
        sa.Column("current_quantity", sa.Integer(), nullable=False),
        sa.Column("snapshot_version", sa.Integer(), nullable=False),
        sa.Column("adjusted_quantity", sa.Integer(), nullable=False),
        sa.Column("difference", sa.Integer(), nullable=False),
        sa.Column("notes", sa.String(500)),
        sa.UniqueConstraint("adjustment_id", "line_number", name="uq_adjustment_line_number"),
        sa.UniqueConstraint("adjustment_id", "product_id", name="uq_adjustment_line_product"),
        sa.CheckConstraint("adjusted_quantity >= 0", name="ck_adjustment_line_adjusted_nonneg"),
    )
    op.create_index("ix_stock_adjustment_lines_adjustment_id", "stock_adjustment_lines", ["adjustment_id"])

    # --- Comptages
    op.create_table(
        "cycle_count_sessions",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("session_number", sa.String(32), nullable=False, unique=True),
        sa.Column("location", sa.String(16), sa.ForeignKey("locations.code", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", CYCLE_COUNT_STATUS, nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column(
            "adjustment_id",
            sa.BigInteger(),
            sa.ForeignKey("stock_adjustments.id", ondelete="SET NULL"),
        ),
        sa.Column("adjustment_number", sa.String(32)),
        sa.Column("created_by", sa.String(64), nullable=False),
        _ts("created_at", nullable=False),
        sa.Column("completed_by", sa.String(64)),
        _ts("completed_at"),
        sa.Column("cancelled_by", sa.String(64)),
        _ts("cancelled_at"),
    )
    op.create_index("ix_cycle_count_sessions_status", "cycle_count_sessions", ["status"])
    # FK croisée : les deux tables existent maintenant
    with op.batch_alter_table("stock_adjustments") as batch:
        batch.create_foreign_key(
            "fk_adjustment_cycle_count_session",
            "cycle_count_sessions",
            ["cycle_count_session_id"],
            ["id"],
            ondelete="SET NULL",
        )

    op.create_table(
        "cycle_count_lines",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "session_id",
            sa.BigInteger(),
            sa.ForeignKey("cycle_count_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.String(64), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_sku", sa.String(64), nullable=False),
        sa.Column("product_description", sa.String(255), nullable=False),
        sa.Column("system_quantity", sa.Integer(), nullable=False),
        sa.Column("counted_quantity", sa.Integer()),
        sa.Column("variance", sa.Integer()),
        sa.Column("counted_by", sa.String(64)),
        _ts("counted_at"),
        sa.Column("notes", sa.String(500)),
        sa.UniqueConstraint("session_id", "product_id", name="uq_cycle_count_line_product"),
        sa.CheckConstraint(
            "counted_quantity IS NULL OR counted_quantity >= 0",
            name="ck_cycle_count_counted_nonneg",
        ),
    )
    op.create_index("ix_cycle_count_lines_session_id", "cycle_count_lines", ["session_id"])

    # --- Transferts
    op.create_table(
        "transfer_requests",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("transfer_number", sa.String(32), nullable=False, unique=True),
        sa.Column(
            "from_location", sa.String(16), sa.ForeignKey("locations.code", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column(
            "to_location", sa.String(16), sa.ForeignKey("locations.code", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("status", TRANSFER_STATUS, nullable=False),
        sa.Column("order_id", sa.String(64)),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.String(64), nullable=False),
        _ts("created_at", nullable=False),
        sa.Column("shipped_by", sa.String(64)),
        _ts("shipped_at"),
        sa.Column("received_by", sa.String(64)),
        _ts("received_at"),
        sa.Column("cancelled_by", sa.String(64)),
        _ts("cancelled_at"),
        sa.Column("notes_updated_by", sa.String(64)),
        _ts("notes_updated_at"),
        sa.CheckConstraint("from_location != to_location", name="ck_transfer_locations_differ"),
    )
    op.create_index("ix_transfer_requests_status", "transfer_requests", ["status"])
    op.create_index("ix_transfer_requests_order_id", "transfer_requests", ["order_id"])

    op.create_table(
        "transfer_request_lines",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "transfer_id",
            sa.BigInteger(),
            sa.ForeignKey("transfer_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.String(64), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_sku", sa.String(64), nullable=False),
        sa.Column("product_description", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("received_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("transfer_id", "line_number", name="uq_transfer_line_number"),
        sa.CheckConstraint("quantity > 0", name="ck_transfer_line_qty_pos"),
        sa.CheckConstraint(
            "received_quantity >= 0 AND received_quantity <= quantity",
            name="ck_transfer_line_received_range",
        ),
    )
    op.create_index("ix_transfer_request_lines_transfer_id", "transfer_request_lines", ["transfer_id"])

    # --- Audit (append-only)
    op.create_table(
        "stock_movements",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("product_id", sa.String(64), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("location", sa.String(16), sa.ForeignKey("locations.code", ondelete="RESTRICT"), nullable=False),
        sa.Column("delta_quantity", sa.Integer(), nullable=False),
        sa.Column("resulting_on_hand", sa.Integer(), nullable=False),
        sa.Column("source_type", MOVEMENT_SOURCE, nullable=False),
        sa.Column("source_id", sa.BigInteger(), nullable=False),
        sa.Column("source_number", sa.String(32)),
        sa.Column("operation_id", sa.String(32), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("notes", sa.String(500)),
        _ts("happened_at", nullable=False),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.CheckConstraint("delta_quantity != 0", name="ck_stock_movement_delta_nonzero"),
        sa.CheckConstraint("resulting_on_hand >= 0", name="ck_stock_movement_result_nonneg"),
        sa.UniqueConstraint("operation_id", "sequence", name="uq_stock_movement_operation_seq"),
    )
    op.create_index("ix_stock_movements_operation_id", "stock_movements", ["operation_id"])
    op.create_index(
        "ix_stock_movements_product_location_time",
        "stock_movements",
        ["product_id", "location", "happened_at"],
    )
    op.create_index("ix_stock_movements_source", "stock_movements", ["source_type", "source_id"])

    # --- Support
    op.create_table(
        "document_counters",
        sa.Column("name", sa.String(32), primary_key=True),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
    )
    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("key_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("operation", sa.String(64), nullable=False),
        sa.Column("resource_id", sa.BigInteger(), nullable=False),
        _ts("created_at", nullable=False),
    )


def downgrade() -> None:
    op.drop_table("idempotency_records")
    op.drop_table("document_counters")
    op.drop_table("stock_movements")
    op.drop_table("transfer_request_lines")
    op.drop_table("transfer_requests")
    op.drop_table("cycle_count_lines")
    with op.batch_alter_table("stock_adjustments") as batch:
        batch.drop_constraint("fk_adjustment_cycle_count_session", type_="foreignkey")
    op.drop_table("cycle_count_sessions")
    op.drop_table("stock_adjustment_lines")
    op.drop_table("stock_adjustments")
    op.drop_table("stock_levels")
    op.drop_table("products")
    op.drop_table("locations")

    bind = op.get_bind()
    for enum_type in (MOVEMENT_SOURCE, TRANSFER_STATUS, CYCLE_COUNT_STATUS, ADJUSTMENT_STATUS, ADJUSTMENT_REASON):
        enum_type.drop(bind, checkfirst=True)
