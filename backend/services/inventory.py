from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.db.models.core_types import AdjustmentStatus, StockStatus
from backend.app.db.models.models_v1 import (
    Product,
    StockAdjustment,
    StockLevel,
    StockMovement,
    utcnow,
)
from backend.services.errors import ValidationError
from backend.services.registry import require_location, require_products

REORDER_FIELDS = ("reorder_point", "reorder_quantity", "minimum_stock", "maximum_stock")

# Statuts remontés par le filtre "low stock"
LOW_STOCK_STATUSES = {StockStatus.low_stock, StockStatus.out_of_stock}


def compute_stock_status(
    *,
    on_hand: int,
    reserved: int,
    reorder_point: int | None,
    maximum_stock: int | None,
) -> StockStatus:
    """
    Statut d'une ligne de stock, par ordre de priorité :
    rupture, surstock, sous le point de commande, sinon en stock.

    Informatif uniquement : le moteur ne déclenche jamais de réappro.
    """
    available = on_hand - reserved
    if available <= 0:
        return StockStatus.out_of_stock
    if maximum_stock is not None and on_hand > maximum_stock:
        return StockStatus.overstock
    if reorder_point and available <= reorder_point:
        return StockStatus.low_stock
    return StockStatus.in_stock


def stock_status_of(sl: StockLevel) -> StockStatus:
    return compute_stock_status(
        on_hand=sl.qty_on_hand,
        reserved=sl.qty_reserved,
        reorder_point=sl.reorder_point,
        maximum_stock=sl.maximum_stock,
    )


def list_stock_levels(
    db: Session,
    *,
    location: str | None = None,
    product_id: str | None = None,
    low_stock_only: bool = False,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[StockLevel], int]:
    stmt = (
        select(StockLevel)
        .join(Product, Product.id == StockLevel.product_id)
        .order_by(StockLevel.location, Product.sku)
        .execution_options(populate_existing=True)
    )
    if location is not None:
        stmt = stmt.where(StockLevel.location == location)
    if product_id is not None:
        stmt = stmt.where(StockLevel.product_id == product_id)

    if low_stock_only:
        # statut calculé : filtrage côté Python, compté AVANT pagination
        rows = [sl for sl in db.execute(stmt).scalars().all() if stock_status_of(sl) in LOW_STOCK_STATUSES]
        start = (page - 1) * page_size
        return rows[start : start + page_size], len(rows)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = db.execute(stmt.offset((page - 1) * page_size).limit(page_size)).scalars().all()
    return list(rows), int(total)


def update_reorder_settings(
    db: Session,
    *,
    product_id: str,
    location: str,
    settings: dict[str, int | None],
) -> StockLevel:
    """
    Mise à jour partielle des seuils. Seules les clés présentes sont modifiées ;
    None efface le seuil. Ne touche ni qty_on_hand ni version.
    """
    require_location(db, location)
    require_products(db, [product_id])

    unknown = set(settings) - set(REORDER_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown reorder settings: {', '.join(sorted(unknown))}")
    for name, value in settings.items():
        if value is not None and value < 0:
            raise ValidationError(f"{name} must be non-negative", {"field": name})

    sl = (
        db.execute(
            select(StockLevel)
            .where(StockLevel.product_id == product_id)
            .where(StockLevel.location == location)
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if not sl:
        sl = StockLevel(
            product_id=product_id,
            location=location,
            qty_on_hand=0,
            qty_reserved=0,
            version=0,
        )
        db.add(sl)

    merged = {name: settings.get(name, getattr(sl, name)) for name in REORDER_FIELDS}
    if (
        merged["minimum_stock"] is not None
        and merged["maximum_stock"] is not None
        and merged["minimum_stock"] > merged["maximum_stock"]
    ):
        raise ValidationError("minimum_stock cannot exceed maximum_stock")

    for name, value in merged.items():
        setattr(sl, name, value)
    db.flush()
    return sl


@dataclass(frozen=True)
class InventorySummary:
    total_products: int
    below_reorder_point: int
    pending_adjustments: int
    movements_today: int


def get_inventory_summary(db: Session) -> InventorySummary:
    total_products = db.execute(
        select(func.count(func.distinct(StockLevel.product_id)))
    ).scalar_one()

    below = {
        sl.product_id
        for sl in db.execute(select(StockLevel)).scalars().all()
        if stock_status_of(sl) in LOW_STOCK_STATUSES
    }

    pending = db.execute(
        select(func.count(StockAdjustment.id)).where(StockAdjustment.status == AdjustmentStatus.pending)
    ).scalar_one()

    start_of_day = datetime.combine(utcnow().date(), time.min, tzinfo=utcnow().tzinfo)
    movements_today = db.execute(
        select(func.count(StockMovement.id)).where(StockMovement.happened_at >= start_of_day)
    ).scalar_one()

    return InventorySummary(
        total_products=int(total_products),
        below_reorder_point=len(below),
        pending_adjustments=int(pending),
        movements_today=int(movements_today),
    )
