"""
Cycle Count Workflow (comptage à l'aveugle).

La quantité système est gelée à la création et n'est révélée qu'à la
complétion. Compléter une session ne touche jamais le ledger : les écarts
passent par un ajustement CYCLE_COUNT soumis à approbation.
"""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from backend.app.core.logging import get_logger
from backend.app.db.models.core_types import AdjustmentReason, CycleCountStatus
from backend.app.db.models.models_v1 import (
    CycleCountLine,
    CycleCountSession,
    StockAdjustment,
    utcnow,
)
from backend.app.schemas.adjustment import AdjustmentLineCreate
from backend.services import ledger
from backend.services.adjustments import submit_adjustment
from backend.services.errors import InvalidStateError, NotFoundError, ValidationError
from backend.services.numbering import CYCLE_COUNT_PREFIX, next_document_number
from backend.services.registry import require_location, require_products

logger = get_logger(__name__)


def get_session(db: Session, session_id: int) -> CycleCountSession:
    session = (
        db.execute(
            select(CycleCountSession)
            .where(CycleCountSession.id == session_id)
            .options(selectinload(CycleCountSession.lines))
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if session is None:
        raise NotFoundError("CycleCountSession", session_id)
    return session


def get_session_for_review(db: Session, session_id: int) -> CycleCountSession:
    """Projection revue : refusée tant que la session n'est pas COMPLETED."""
    session = get_session(db, session_id)
    if session.status != CycleCountStatus.completed:
        raise InvalidStateError(
            f"System quantities of {session.session_number} are only available once completed",
            status=session.status,
        )
    return session


def list_sessions(
    db: Session,
    *,
    location: str | None = None,
    status: CycleCountStatus | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[tuple[CycleCountSession, int, int]], int]:
    stmt = select(CycleCountSession)
    if location is not None:
        stmt = stmt.where(CycleCountSession.location == location)
    if status is not None:
        stmt = stmt.where(CycleCountSession.status == status)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()

    line_count = (
        select(func.count(CycleCountLine.id))
        .where(CycleCountLine.session_id == CycleCountSession.id)
        .scalar_subquery()
    )
    counted_count = (
        select(func.count(CycleCountLine.id))
        .where(CycleCountLine.session_id == CycleCountSession.id)
        .where(CycleCountLine.counted_quantity.is_not(None))
        .scalar_subquery()
    )
    rows = db.execute(
        stmt.add_columns(line_count, counted_count)
        .order_by(CycleCountSession.created_at.desc(), CycleCountSession.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return [(s, int(lc), int(cc)) for s, lc, cc in rows], int(total)


def create_session(
    db: Session,
    *,
    location: str,
    product_ids: Sequence[str],
    created_by: str,
    notes: str | None = None,
) -> CycleCountSession:
    if not product_ids:
        raise ValidationError("At least one product is required")

    duplicates = sorted({pid for pid in product_ids if list(product_ids).count(pid) > 1})
    if duplicates:
        raise ValidationError(
            f"Duplicate products in cycle count: {', '.join(duplicates)}",
            {"duplicate_product_ids": duplicates},
        )

    require_location(db, location)
    products = require_products(db, product_ids)

    session = CycleCountSession(
        session_number=next_document_number(db, CYCLE_COUNT_PREFIX),
        location=location,
        status=CycleCountStatus.open,
        notes=notes,
        created_by=created_by,
        created_at=utcnow(),
    )
    for pid in product_ids:
        product = products[pid]
        session.lines.append(
            CycleCountLine(
                product_id=product.id,
                product_sku=product.sku,
                product_description=product.description,
                system_quantity=ledger.read_versioned(db, pid, location).qty_on_hand,
            )
        )

    db.add(session)
    db.flush()
    logger.info(
        "cycle_count_created",
        session_id=session.id,
        number=session.session_number,
        location=location,
        lines=len(session.lines),
    )
    return session


def record_count(
    db: Session,
    session_id: int,
    product_id: str,
    counted_quantity: int,
    counted_by: str,
    notes: str | None = None,
) -> CycleCountLine:
    session = get_session(db, session_id)
    if session.status != CycleCountStatus.open:
        raise InvalidStateError(
            f"Cannot record counts for session in {session.status.value} status",
            status=session.status,
        )
    if counted_quantity < 0:
        raise ValidationError("Counted quantity must be non-negative", {"product_id": product_id})

    line = next((ln for ln in session.lines if ln.product_id == product_id), None)
    if line is None:
        raise ValidationError(
            f"Product {product_id} is not part of session {session.session_number}",
            {"product_id": product_id},
        )

    # un recomptage écrase la valeur précédente
    line.counted_quantity = counted_quantity
    line.counted_by = counted_by
    line.counted_at = utcnow()
    if notes is not None:
        line.notes = notes
    db.flush()
    return line


def complete_session(db: Session, session_id: int, completed_by: str) -> CycleCountSession:
    session = get_session(db, session_id)
    if session.status != CycleCountStatus.open:
        raise InvalidStateError(
            f"Cannot complete session in {session.status.value} status",
            status=session.status,
        )

    uncounted = [ln.product_sku for ln in session.lines if ln.counted_quantity is None]
    if uncounted:
        raise ValidationError(
            f"{len(uncounted)} line(s) not yet counted: {', '.join(uncounted)}",
            {"uncounted_skus": uncounted},
        )

    result = db.execute(
        update(CycleCountSession)
        .where(CycleCountSession.id == session_id)
        .where(CycleCountSession.status == CycleCountStatus.open)
        .values(status=CycleCountStatus.completed, completed_by=completed_by, completed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateError(f"Session {session.session_number} was closed concurrently")

    for line in session.lines:
        line.variance = line.counted_quantity - line.system_quantity
    db.flush()

    logger.info(
        "cycle_count_completed",
        session_id=session.id,
        number=session.session_number,
        lines_with_variance=sum(1 for ln in session.lines if ln.variance),
    )
    return get_session(db, session_id)


def convert_to_adjustment(db: Session, session_id: int, actor_id: str) -> tuple[CycleCountSession, StockAdjustment | None]:
    """
    Crée un ajustement PENDING (raison CYCLE_COUNT) à partir des lignes en écart.

    Le comptage passe donc par la même porte d'approbation que tout ajustement.
    Sans écart, rien n'est créé.
    """
    session = get_session(db, session_id)
    if session.status != CycleCountStatus.completed:
        raise InvalidStateError(
            f"Cannot convert session in {session.status.value} status",
            status=session.status,
        )
    if session.adjustment_id is not None:
        raise InvalidStateError(
            f"Session {session.session_number} was already converted to {session.adjustment_number}",
            status=session.status,
        )

    variance_lines = [ln for ln in session.lines if ln.variance]
    if not variance_lines:
        logger.info("cycle_count_no_variance", session_id=session.id, number=session.session_number)
        return session, None

    adj = submit_adjustment(
        db,
        location=session.location,
        reason=AdjustmentReason.cycle_count,
        notes=f"Generated from cycle count {session.session_number}",
        lines=[
            AdjustmentLineCreate(
                product_id=ln.product_id,
                adjusted_quantity=ln.counted_quantity,
                notes=ln.notes,
            )
            for ln in variance_lines
        ],
        submitted_by=actor_id,
        cycle_count_session_id=session.id,
    )

    result = db.execute(
        update(CycleCountSession)
        .where(CycleCountSession.id == session_id)
        .where(CycleCountSession.status == CycleCountStatus.completed)
        .where(CycleCountSession.adjustment_id.is_(None))
        .values(adjustment_id=adj.id, adjustment_number=adj.adjustment_number)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateError(f"Session {session.session_number} was converted concurrently")

    logger.info(
        "cycle_count_converted",
        session_id=session.id,
        number=session.session_number,
        adjustment_number=adj.adjustment_number,
    )
    return get_session(db, session_id), adj


def cancel_session(db: Session, session_id: int, actor_id: str) -> CycleCountSession:
    session = get_session(db, session_id)
    cancellable = session.status == CycleCountStatus.open or (
        session.status == CycleCountStatus.completed and session.adjustment_id is None
    )
    if not cancellable:
        raise InvalidStateError(
            f"Cannot cancel session {session.session_number} ({session.status.value})",
            status=session.status,
        )

    result = db.execute(
        update(CycleCountSession)
        .where(CycleCountSession.id == session_id)
        .where(CycleCountSession.status == session.status)
        .where(CycleCountSession.adjustment_id.is_(None))
        .values(status=CycleCountStatus.cancelled, cancelled_by=actor_id, cancelled_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateError(f"Session {session.session_number} changed concurrently")

    logger.info("cycle_count_cancelled", session_id=session.id, number=session.session_number, actor=actor_id)
    return get_session(db, session_id)
