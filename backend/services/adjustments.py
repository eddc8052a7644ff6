"""
Adjustment Workflow.

Un ajustement est soumis PENDING avec un snapshot de la quantité et de la
version du ledger par ligne, puis approuvé (application des écarts) ou
rejeté (aucune mutation). Les décisions sont à tir unique : une seconde
décision lève InvalidStateError. Si le ledger a bougé depuis la soumission,
l'approbation échoue ; refresh_adjustment reprend alors le snapshot.
"""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from backend.app.core.logging import get_logger
from backend.app.db.models.core_types import AdjustmentReason, AdjustmentStatus, MovementSource
from backend.app.db.models.models_v1 import StockAdjustment, StockAdjustmentLine, utcnow
from backend.app.schemas.adjustment import AdjustmentLineCreate
from backend.services import ledger
from backend.services.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from backend.services.movements import new_operation_id, record_movement
from backend.services.numbering import ADJUSTMENT_PREFIX, next_document_number
from backend.services.registry import require_location, require_products

logger = get_logger(__name__)


def get_adjustment(db: Session, adjustment_id: int) -> StockAdjustment:
    adj = (
        db.execute(
            select(StockAdjustment)
            .where(StockAdjustment.id == adjustment_id)
            .options(selectinload(StockAdjustment.lines))
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if adj is None:
        raise NotFoundError("StockAdjustment", adjustment_id)
    return adj


def list_adjustments(
    db: Session,
    *,
    location: str | None = None,
    status: AdjustmentStatus | None = None,
    reason: AdjustmentReason | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[tuple[StockAdjustment, int]], int]:
    stmt = select(StockAdjustment)
    if location is not None:
        stmt = stmt.where(StockAdjustment.location == location)
    if status is not None:
        stmt = stmt.where(StockAdjustment.status == status)
    if reason is not None:
        stmt = stmt.where(StockAdjustment.reason == reason)
    if start is not None:
        stmt = stmt.where(StockAdjustment.created_at >= start)
    if end is not None:
        stmt = stmt.where(StockAdjustment.created_at <= end)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()

    line_count = (
        select(func.count(StockAdjustmentLine.id))
        .where(StockAdjustmentLine.adjustment_id == StockAdjustment.id)
        .scalar_subquery()
    )
    rows = db.execute(
        stmt.add_columns(line_count)
        .order_by(StockAdjustment.created_at.desc(), StockAdjustment.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return [(adj, int(count)) for adj, count in rows], int(total)


def submit_adjustment(
    db: Session,
    *,
    location: str,
    reason: AdjustmentReason,
    lines: Sequence[AdjustmentLineCreate],
    submitted_by: str,
    notes: str | None = None,
    cycle_count_session_id: int | None = None,
) -> StockAdjustment:
    if not lines:
        raise ValidationError("At least one adjustment line is required")

    for idx, line in enumerate(lines, start=1):
        if line.adjusted_quantity < 0:
            raise ValidationError(
                f"Line {idx}: adjusted quantity must be non-negative",
                {"line_number": idx, "product_id": line.product_id},
            )

    product_ids = [line.product_id for line in lines]
    duplicates = sorted({pid for pid in product_ids if product_ids.count(pid) > 1})
    if duplicates:
        raise ValidationError(
            f"Duplicate products in adjustment: {', '.join(duplicates)}",
            {"duplicate_product_ids": duplicates},
        )

    require_location(db, location)
    products = require_products(db, product_ids)

    adj = StockAdjustment(
        adjustment_number=next_document_number(db, ADJUSTMENT_PREFIX),
        location=location,
        reason=reason,
        notes=notes,
        status=AdjustmentStatus.pending,
        cycle_count_session_id=cycle_count_session_id,
        created_by=submitted_by,
        created_at=utcnow(),
    )

    for idx, line in enumerate(lines, start=1):
        product = products[line.product_id]
        snap = ledger.read_versioned(db, line.product_id, location)
        adj.lines.append(
            StockAdjustmentLine(
                line_number=idx,
                product_id=product.id,
                product_sku=product.sku,
                product_description=product.description,
                current_quantity=snap.qty_on_hand,
                snapshot_version=snap.version,
                adjusted_quantity=line.adjusted_quantity,
                difference=line.adjusted_quantity - snap.qty_on_hand,
                notes=line.notes,
            )
        )

    db.add(adj)
    db.flush()

    logger.info(
        "adjustment_submitted",
        adjustment_id=adj.id,
        number=adj.adjustment_number,
        location=location,
        reason=reason.value,
        lines=len(adj.lines),
    )
    return adj


def _claim_decision(db: Session, adj: StockAdjustment, new_status: AdjustmentStatus, **values) -> None:
    """
    Passe PENDING -> new_status par une mise à jour conditionnelle :
    de deux décisions concurrentes, une seule trouve encore PENDING.
    """
    result = db.execute(
        update(StockAdjustment)
        .where(StockAdjustment.id == adj.id)
        .where(StockAdjustment.status == AdjustmentStatus.pending)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = db.execute(
            select(StockAdjustment.status).where(StockAdjustment.id == adj.id)
        ).scalar_one()
        raise InvalidStateError(
            f"Adjustment {adj.adjustment_number} is already {current.value}",
            status=current,
        )


def _require_pending(adj: StockAdjustment, action: str) -> None:
    if adj.status != AdjustmentStatus.pending:
        raise InvalidStateError(
            f"Cannot {action} adjustment with status {adj.status.value}",
            status=adj.status,
        )


def approve_adjustment(
    db: Session,
    adjustment_id: int,
    approver_id: str,
    *,
    require_distinct_approver: bool = True,
) -> StockAdjustment:
    adj = get_adjustment(db, adjustment_id)
    _require_pending(adj, "approve")

    if require_distinct_approver and approver_id == adj.created_by:
        raise ValidationError("Approver must differ from the submitter", {"approver_id": approver_id})

    _claim_decision(db, adj, AdjustmentStatus.approved, decided_by=approver_id, decided_at=utcnow())

    source = (
        MovementSource.cycle_count_correction
        if adj.cycle_count_session_id is not None
        else MovementSource.adjustment
    )
    operation_id = new_operation_id()

    for line in adj.lines:
        # Re-validation explicite : le snapshot n'est qu'informatif
        live = ledger.read_versioned(db, line.product_id, adj.location)
        if live.version != line.snapshot_version:
            raise ConflictError(
                f"Stock for {line.product_sku}@{adj.location} changed since submission "
                f"(on hand was {line.current_quantity}, now {live.qty_on_hand}); "
                "refresh the adjustment before approving",
                retryable=False,
                details={
                    "line_number": line.line_number,
                    "product_id": line.product_id,
                    "snapshot_quantity": line.current_quantity,
                    "snapshot_version": line.snapshot_version,
                    "live_quantity": live.qty_on_hand,
                    "live_version": live.version,
                },
            )
        if line.difference == 0:
            continue

        level = ledger.apply_delta(db, line.product_id, adj.location, line.difference, live.version)
        record_movement(
            db,
            level=level,
            delta=line.difference,
            source_type=source,
            source_id=adj.id,
            source_number=adj.adjustment_number,
            operation_id=operation_id,
            sequence=line.line_number,
            created_by=approver_id,
            notes=line.notes or adj.notes,
        )

    db.flush()
    logger.info(
        "adjustment_approved",
        adjustment_id=adj.id,
        number=adj.adjustment_number,
        approver=approver_id,
        operation_id=operation_id,
    )
    return get_adjustment(db, adjustment_id)


def refresh_adjustment(db: Session, adjustment_id: int, actor_id: str) -> StockAdjustment:
    """
    Reprend le snapshot d'un ajustement PENDING sur le ledger courant.

    La quantité cible de chaque ligne est conservée ; quantité courante,
    version et écart sont relus. Aucune écriture dans le ledger : c'est
    l'approbation suivante qui décidera sur ces nouvelles valeurs.
    """
    adj = get_adjustment(db, adjustment_id)
    _require_pending(adj, "refresh")

    # verrouille l'en-tête face à une décision concurrente
    _claim_decision(db, adj, AdjustmentStatus.pending, refreshed_by=actor_id, refreshed_at=utcnow())

    changed = 0
    for line in adj.lines:
        live = ledger.read_versioned(db, line.product_id, adj.location)
        if live.version == line.snapshot_version:
            continue
        line.current_quantity = live.qty_on_hand
        line.snapshot_version = live.version
        line.difference = line.adjusted_quantity - live.qty_on_hand
        changed += 1

    db.flush()
    logger.info(
        "adjustment_refreshed",
        adjustment_id=adj.id,
        number=adj.adjustment_number,
        actor=actor_id,
        lines_changed=changed,
    )
    return get_adjustment(db, adjustment_id)


def reject_adjustment(db: Session, adjustment_id: int, approver_id: str, reason: str) -> StockAdjustment:
    if not reason or not reason.strip():
        raise ValidationError("Rejection reason is required")

    adj = get_adjustment(db, adjustment_id)
    _require_pending(adj, "reject")

    _claim_decision(
        db,
        adj,
        AdjustmentStatus.rejected,
        decided_by=approver_id,
        decided_at=utcnow(),
        rejection_reason=reason.strip(),
    )
    logger.info("adjustment_rejected", adjustment_id=adj.id, number=adj.adjustment_number, approver=approver_id)
    return get_adjustment(db, adjustment_id)


def cancel_adjustment(db: Session, adjustment_id: int, actor_id: str) -> StockAdjustment:
    adj = get_adjustment(db, adjustment_id)
    _require_pending(adj, "cancel")

    _claim_decision(db, adj, AdjustmentStatus.cancelled, decided_by=actor_id, decided_at=utcnow())
    logger.info("adjustment_cancelled", adjustment_id=adj.id, number=adj.adjustment_number, actor=actor_id)
    return get_adjustment(db, adjustment_id)
