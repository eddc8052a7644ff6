"""
Transfer Workflow : expédition puis réception en deux phases.

- ship    : débite la source (tout ou rien) et passe IN_TRANSIT
- receipt : crédite la destination par delta cumulatif, ligne par ligne
- complete: RECEIVED quand chaque ligne est entièrement reçue

Entre les deux phases la quantité est "en transit" : elle n'apparaît dans le
on_hand d'aucun entrepôt.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from backend.app.core.logging import get_logger
from backend.app.db.models.core_types import MovementSource, TransferStatus
from backend.app.db.models.models_v1 import TransferRequest, TransferRequestLine, utcnow
from backend.app.schemas.transfer import TransferLineCreate
from backend.services import ledger
from backend.services.errors import (
    ConflictError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from backend.services.movements import new_operation_id, record_movement
from backend.services.numbering import TRANSFER_PREFIX, next_document_number
from backend.services.registry import require_location, require_products

logger = get_logger(__name__)


def get_transfer(db: Session, transfer_id: int) -> TransferRequest:
    tr = (
        db.execute(
            select(TransferRequest)
            .where(TransferRequest.id == transfer_id)
            .options(selectinload(TransferRequest.lines))
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if tr is None:
        raise NotFoundError("TransferRequest", transfer_id)
    return tr


def list_transfers(
    db: Session,
    *,
    status: TransferStatus | None = None,
    order_id: str | None = None,
    location: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[tuple[TransferRequest, int]], int]:
    stmt = select(TransferRequest)
    if status is not None:
        stmt = stmt.where(TransferRequest.status == status)
    if order_id is not None:
        stmt = stmt.where(TransferRequest.order_id == order_id)
    if location is not None:
        stmt = stmt.where(
            (TransferRequest.from_location == location) | (TransferRequest.to_location == location)
        )

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()

    line_count = (
        select(func.count(TransferRequestLine.id))
        .where(TransferRequestLine.transfer_id == TransferRequest.id)
        .scalar_subquery()
    )
    rows = db.execute(
        stmt.add_columns(line_count)
        .order_by(TransferRequest.created_at.desc(), TransferRequest.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return [(tr, int(count)) for tr, count in rows], int(total)


def create_transfer(
    db: Session,
    *,
    from_location: str,
    to_location: str,
    lines: Sequence[TransferLineCreate],
    created_by: str,
    notes: str | None = None,
    order_id: str | None = None,
) -> TransferRequest:
    if from_location == to_location:
        raise ValidationError("Source and destination must differ", {"location": from_location})
    if not lines:
        raise ValidationError("At least one transfer line is required")
    for idx, line in enumerate(lines, start=1):
        if line.quantity < 1:
            raise ValidationError(
                f"Line {idx}: quantity must be at least 1",
                {"line_number": idx, "product_id": line.product_id},
            )

    require_location(db, from_location)
    require_location(db, to_location)
    products = require_products(db, [line.product_id for line in lines])

    tr = TransferRequest(
        transfer_number=next_document_number(db, TRANSFER_PREFIX),
        from_location=from_location,
        to_location=to_location,
        status=TransferStatus.pending,
        order_id=order_id,
        notes=notes,
        created_by=created_by,
        created_at=utcnow(),
    )
    for idx, line in enumerate(lines, start=1):
        product = products[line.product_id]
        tr.lines.append(
            TransferRequestLine(
                line_number=idx,
                product_id=product.id,
                product_sku=product.sku,
                product_description=product.description,
                quantity=line.quantity,
                received_quantity=0,
            )
        )

    db.add(tr)
    db.flush()
    logger.info(
        "transfer_created",
        transfer_id=tr.id,
        number=tr.transfer_number,
        from_location=from_location,
        to_location=to_location,
        lines=len(tr.lines),
    )
    return tr


def _claim_status(
    db: Session,
    tr: TransferRequest,
    expected: TransferStatus,
    new_status: TransferStatus,
    **values,
) -> None:
    result = db.execute(
        update(TransferRequest)
        .where(TransferRequest.id == tr.id)
        .where(TransferRequest.status == expected)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = db.execute(
            select(TransferRequest.status).where(TransferRequest.id == tr.id)
        ).scalar_one()
        raise InvalidStateError(
            f"Transfer {tr.transfer_number} is already {current.value}",
            status=current,
        )


def ship_transfer(db: Session, transfer_id: int, shipper_id: str) -> TransferRequest:
    tr = get_transfer(db, transfer_id)
    if tr.status != TransferStatus.pending:
        raise InvalidStateError(
            f"Cannot ship transfer with status {tr.status.value}",
            status=tr.status,
        )

    # Pré-contrôle agrégé par produit : deux lignes du même produit
    # doivent tenir ensemble dans le on_hand de la source.
    requested: dict[str, int] = defaultdict(int)
    for line in tr.lines:
        requested[line.product_id] += line.quantity

    levels = {pid: ledger.read_versioned(db, pid, tr.from_location) for pid in requested}
    shortages = [
        {
            "product_id": pid,
            "location": tr.from_location,
            "on_hand": levels[pid].qty_on_hand,
            "requested": qty,
        }
        for pid, qty in requested.items()
        if levels[pid].qty_on_hand < qty
    ]
    if shortages:
        logger.info("transfer_ship_refused", transfer_id=tr.id, number=tr.transfer_number, shortages=len(shortages))
        raise InsufficientStockError(shortages)

    _claim_status(
        db,
        tr,
        TransferStatus.pending,
        TransferStatus.in_transit,
        shipped_by=shipper_id,
        shipped_at=utcnow(),
    )

    operation_id = new_operation_id()
    for line in tr.lines:
        level = ledger.apply_delta(
            db,
            line.product_id,
            tr.from_location,
            -line.quantity,
            levels[line.product_id].version,
        )
        levels[line.product_id] = level
        record_movement(
            db,
            level=level,
            delta=-line.quantity,
            source_type=MovementSource.transfer_ship,
            source_id=tr.id,
            source_number=tr.transfer_number,
            operation_id=operation_id,
            sequence=line.line_number,
            created_by=shipper_id,
            notes=f"Transfer to {tr.to_location}",
        )

    db.flush()
    logger.info("transfer_shipped", transfer_id=tr.id, number=tr.transfer_number, operation_id=operation_id)
    return get_transfer(db, transfer_id)


def record_receipt(
    db: Session,
    transfer_id: int,
    line_id: int,
    received_quantity: int,
    receiver_id: str,
) -> TransferRequest:
    """
    Enregistre la quantité reçue CUMULÉE d'une ligne.

    Seul le delta (nouvelle valeur - valeur déjà enregistrée) est crédité ;
    renvoyer la même valeur ne fait rien.
    """
    tr = get_transfer(db, transfer_id)
    if tr.status != TransferStatus.in_transit:
        raise InvalidStateError(
            f"Cannot record receipt for transfer with status {tr.status.value}",
            status=tr.status,
        )

    line = next((ln for ln in tr.lines if ln.id == line_id), None)
    if line is None:
        raise NotFoundError("TransferRequestLine", line_id)

    if received_quantity < 0 or received_quantity > line.quantity:
        raise ValidationError(
            f"Received quantity must be between 0 and {line.quantity}",
            {"line_id": line_id, "received_quantity": received_quantity, "quantity": line.quantity},
        )
    previous = line.received_quantity
    if received_quantity < previous:
        raise ValidationError(
            f"Received quantity cannot go below the already recorded {previous}",
            {"line_id": line_id, "received_quantity": received_quantity, "previous": previous},
        )

    delta = received_quantity - previous
    if delta == 0:
        return tr

    result = db.execute(
        update(TransferRequestLine)
        .where(TransferRequestLine.id == line_id)
        .where(TransferRequestLine.received_quantity == previous)
        .values(received_quantity=received_quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            f"Receipt for line {line.line_number} of {tr.transfer_number} changed concurrently",
            details={"line_id": line_id},
        )

    live = ledger.read_versioned(db, line.product_id, tr.to_location)
    level = ledger.apply_delta(db, line.product_id, tr.to_location, delta, live.version)
    record_movement(
        db,
        level=level,
        delta=delta,
        source_type=MovementSource.transfer_receive,
        source_id=tr.id,
        source_number=tr.transfer_number,
        operation_id=new_operation_id(),
        sequence=line.line_number,
        created_by=receiver_id,
        notes=f"Transfer from {tr.from_location}",
    )
    db.flush()

    logger.info(
        "transfer_receipt_recorded",
        transfer_id=tr.id,
        number=tr.transfer_number,
        line_number=line.line_number,
        delta=delta,
        received=received_quantity,
    )
    return get_transfer(db, transfer_id)


def complete_transfer(db: Session, transfer_id: int, receiver_id: str) -> TransferRequest:
    tr = get_transfer(db, transfer_id)
    if tr.status != TransferStatus.in_transit:
        raise InvalidStateError(
            f"Cannot complete transfer with status {tr.status.value}",
            status=tr.status,
        )

    outstanding = [
        {"line_number": ln.line_number, "product_sku": ln.product_sku, "missing": ln.quantity - ln.received_quantity}
        for ln in tr.lines
        if ln.received_quantity < ln.quantity
    ]
    if outstanding:
        raise InvalidStateError(
            f"{len(outstanding)} line(s) of {tr.transfer_number} not fully received",
            status=tr.status,
            details={"outstanding": outstanding},
        )

    _claim_status(
        db,
        tr,
        TransferStatus.in_transit,
        TransferStatus.received,
        received_by=receiver_id,
        received_at=utcnow(),
    )
    logger.info("transfer_received", transfer_id=tr.id, number=tr.transfer_number)
    return get_transfer(db, transfer_id)


def cancel_transfer(db: Session, transfer_id: int, actor_id: str) -> TransferRequest:
    tr = get_transfer(db, transfer_id)
    if tr.status == TransferStatus.in_transit:
        # la marchandise a quitté la source : pas de retour automatique
        raise InvalidStateError(
            f"Transfer {tr.transfer_number} is in transit and cannot be cancelled",
            status=tr.status,
        )
    if tr.status != TransferStatus.pending:
        raise InvalidStateError(
            f"Cannot cancel transfer with status {tr.status.value}",
            status=tr.status,
        )

    _claim_status(
        db,
        tr,
        TransferStatus.pending,
        TransferStatus.cancelled,
        cancelled_by=actor_id,
        cancelled_at=utcnow(),
    )
    logger.info("transfer_cancelled", transfer_id=tr.id, number=tr.transfer_number, actor=actor_id)
    return get_transfer(db, transfer_id)


def update_notes(db: Session, transfer_id: int, notes: str, actor_id: str) -> TransferRequest:
    tr = get_transfer(db, transfer_id)
    tr.notes = notes
    tr.notes_updated_by = actor_id
    tr.notes_updated_at = utcnow()
    db.flush()
    logger.info("transfer_notes_updated", transfer_id=tr.id, number=tr.transfer_number, actor=actor_id)
    return tr
