"""
Stock Ledger Store.

Seul point de mutation de qty_on_hand : apply_delta, une compare-and-swap
sur StockLevel.version. Aucun verrou long n'est pris (les décisions humaines
peuvent durer des minutes) ; le perdant d'une course reçoit ConflictError.

Une paire (produit, location) sans ligne se lit comme on_hand=0, version=0.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.core.logging import get_logger
from backend.app.db.models.models_v1 import StockLevel, utcnow
from backend.services.errors import ConflictError, NegativeStockError

logger = get_logger(__name__)


@dataclass(frozen=True)
class VersionedLevel:
    product_id: str
    location: str
    qty_on_hand: int
    qty_reserved: int
    version: int
    exists: bool = True

    @property
    def available(self) -> int:
        return self.qty_on_hand - self.qty_reserved


def get_level(db: Session, product_id: str, location: str) -> StockLevel | None:
    return (
        db.execute(
            select(StockLevel)
            .where(StockLevel.product_id == product_id)
            .where(StockLevel.location == location)
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )


def read_versioned(db: Session, product_id: str, location: str) -> VersionedLevel:
    """
    Lecture versionnée, toujours depuis la base (jamais depuis l'identity map),
    pour qu'un appelant puisse détecter un état périmé avant d'écrire.
    """
    row = db.execute(
        select(StockLevel.qty_on_hand, StockLevel.qty_reserved, StockLevel.version)
        .where(StockLevel.product_id == product_id)
        .where(StockLevel.location == location)
    ).one_or_none()

    if row is None:
        return VersionedLevel(product_id, location, 0, 0, 0, exists=False)

    on_hand, reserved, version = row
    return VersionedLevel(product_id, location, int(on_hand), int(reserved), int(version))


def apply_delta(
    db: Session,
    product_id: str,
    location: str,
    delta: int,
    expected_version: int,
) -> VersionedLevel:
    current = read_versioned(db, product_id, location)
    if current.version != expected_version:
        raise ConflictError(
            f"Stock level {product_id}@{location} moved "
            f"(expected version {expected_version}, found {current.version})",
            details={
                "product_id": product_id,
                "location": location,
                "expected_version": expected_version,
                "actual_version": current.version,
            },
        )

    new_on_hand = current.qty_on_hand + delta
    if new_on_hand < 0:
        logger.error(
            "negative_stock_refused",
            product_id=product_id,
            location=location,
            on_hand=current.qty_on_hand,
            delta=delta,
        )
        raise NegativeStockError(product_id, location, current.qty_on_hand, delta)

    new_version = expected_version + 1

    if not current.exists:
        try:
            db.execute(
                insert(StockLevel).values(
                    product_id=product_id,
                    location=location,
                    qty_on_hand=new_on_hand,
                    qty_reserved=0,
                    version=new_version,
                    updated_at=utcnow(),
                )
            )
        except IntegrityError as exc:
            # une autre transaction a créé la ligne entre-temps
            raise ConflictError(
                f"Stock level {product_id}@{location} was created concurrently",
                details={"product_id": product_id, "location": location},
            ) from exc
    else:
        result = db.execute(
            update(StockLevel)
            .where(StockLevel.product_id == product_id)
            .where(StockLevel.location == location)
            .where(StockLevel.version == expected_version)
            .values(
                qty_on_hand=StockLevel.qty_on_hand + delta,
                version=StockLevel.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Stock level {product_id}@{location} changed during update",
                details={
                    "product_id": product_id,
                    "location": location,
                    "expected_version": expected_version,
                },
            )

    logger.debug(
        "ledger_delta_applied",
        product_id=product_id,
        location=location,
        delta=delta,
        on_hand=new_on_hand,
        version=new_version,
    )
    return VersionedLevel(product_id, location, new_on_hand, current.qty_reserved, new_version)
