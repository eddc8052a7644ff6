"""
Journal des mouvements (audit).

Chaque delta appliqué au ledger produit exactement un StockMovement.
Les mouvements d'une même opération partagent un operation_id et sont
numérotés dans l'ordre des lignes, ce qui permet de rejouer l'avant/après
par opération.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.db.models.core_types import MovementSource
from backend.app.db.models.models_v1 import StockLevel, StockMovement, utcnow
from backend.services.ledger import VersionedLevel


def new_operation_id() -> str:
    return uuid.uuid4().hex


def record_movement(
    db: Session,
    *,
    level: VersionedLevel,
    delta: int,
    source_type: MovementSource,
    source_id: int,
    source_number: str | None,
    operation_id: str,
    sequence: int,
    created_by: str,
    notes: str | None = None,
) -> StockMovement:
    mv = StockMovement(
        product_id=level.product_id,
        location=level.location,
        delta_quantity=delta,
        resulting_on_hand=level.qty_on_hand,
        source_type=source_type,
        source_id=source_id,
        source_number=source_number,
        operation_id=operation_id,
        sequence=sequence,
        notes=notes,
        happened_at=utcnow(),
        created_by=created_by,
    )
    db.add(mv)
    return mv


def list_movements(
    db: Session,
    *,
    product_id: str | None = None,
    location: str | None = None,
    source_type: MovementSource | None = None,
    source_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[StockMovement], int]:
    stmt = select(StockMovement)
    if product_id is not None:
        stmt = stmt.where(StockMovement.product_id == product_id)
    if location is not None:
        stmt = stmt.where(StockMovement.location == location)
    if source_type is not None:
        stmt = stmt.where(StockMovement.source_type == source_type)
    if source_id is not None:
        stmt = stmt.where(StockMovement.source_id == source_id)
    if start is not None:
        stmt = stmt.where(StockMovement.happened_at >= start)
    if end is not None:
        stmt = stmt.where(StockMovement.happened_at <= end)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = (
        db.execute(
            stmt.order_by(StockMovement.happened_at.desc(), StockMovement.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(rows), int(total)


def reconstruct_on_hand(
    db: Session,
    product_id: str,
    location: str,
    as_of: datetime | None = None,
) -> tuple[int, int]:
    """
    Retourne (on_hand reconstruit, nombre de mouvements) en sommant les deltas.
    """
    stmt = (
        select(
            func.coalesce(func.sum(StockMovement.delta_quantity), 0),
            func.count(StockMovement.id),
        )
        .where(StockMovement.product_id == product_id)
        .where(StockMovement.location == location)
    )
    if as_of is not None:
        stmt = stmt.where(StockMovement.happened_at <= as_of)

    total, count = db.execute(stmt).one()
    return int(total), int(count)


@dataclass(frozen=True)
class LedgerDiscrepancy:
    product_id: str
    location: str
    ledger_on_hand: int
    movement_on_hand: int

    @property
    def gap(self) -> int:
        return self.ledger_on_hand - self.movement_on_hand


def verify_ledger(db: Session, location: str | None = None) -> tuple[int, list[LedgerDiscrepancy]]:
    """
    Compare qty_on_hand de chaque ligne du ledger à la somme de ses mouvements.

    Retourne (nombre de lignes vérifiées, écarts).
    """
    sums = (
        select(
            StockMovement.product_id.label("product_id"),
            StockMovement.location.label("location"),
            func.sum(StockMovement.delta_quantity).label("total"),
        )
        .group_by(StockMovement.product_id, StockMovement.location)
        .subquery()
    )

    stmt = (
        select(StockLevel.product_id, StockLevel.location, StockLevel.qty_on_hand, sums.c.total)
        .outerjoin(
            sums,
            (sums.c.product_id == StockLevel.product_id) & (sums.c.location == StockLevel.location),
        )
        .order_by(StockLevel.location, StockLevel.product_id)
    )
    if location is not None:
        stmt = stmt.where(StockLevel.location == location)

    checked = 0
    discrepancies: list[LedgerDiscrepancy] = []
    for product_id, loc, on_hand, total in db.execute(stmt).all():
        checked += 1
        movement_total = int(total or 0)
        if int(on_hand) != movement_total:
            discrepancies.append(LedgerDiscrepancy(product_id, loc, int(on_hand), movement_total))
    return checked, discrepancies
