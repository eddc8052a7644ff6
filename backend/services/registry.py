"""
Accès aux référentiels des collaborateurs (locations, catalogue produits).

Le moteur ne les modifie jamais ; il valide simplement les identifiants reçus.
"""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import Location, Product
from backend.services.errors import ValidationError


def list_locations(db: Session, *, active_only: bool = True) -> list[Location]:
    stmt = select(Location).order_by(Location.code)
    if active_only:
        stmt = stmt.where(Location.active.is_(True))
    return list(db.execute(stmt).scalars().all())


def require_location(db: Session, code: str) -> Location:
    loc = db.get(Location, code)
    if loc is None or not loc.active:
        raise ValidationError(f"Unknown location: {code}", {"location": code})
    return loc


def require_products(db: Session, product_ids: Iterable[str]) -> dict[str, Product]:
    wanted = list(dict.fromkeys(product_ids))
    if not wanted:
        return {}

    rows = (
        db.execute(
            select(Product)
            .where(Product.id.in_(wanted))
            .where(Product.active.is_(True))
        )
        .scalars()
        .all()
    )
    found = {p.id: p for p in rows}

    missing = [pid for pid in wanted if pid not in found]
    if missing:
        raise ValidationError(
            f"Products not found: {', '.join(missing)}",
            {"missing_product_ids": missing},
        )
    return found
