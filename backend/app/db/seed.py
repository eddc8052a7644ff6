from __future__ import annotations

from sqlalchemy.orm import Session

from backend.app.core.logging import configure_logging, get_logger
from backend.app.db.models.models_v1 import Location, Product
from backend.app.db.session import SessionLocal

logger = get_logger(__name__)

LOCATIONS = [
    ("JHB", "Johannesburg"),
    ("CT", "Cape Town"),
]

PRODUCTS = [
    ("SKU-1", "SKU-1", "Pallet wrap 500mm"),
    ("SKU-2", "SKU-2", "Carton 600x400x400"),
    ("SKU-3", "SKU-3", "Packing tape 48mm"),
]


def seed_reference_data(db: Session) -> tuple[int, int]:
    """
    Insère les entrepôts et le catalogue de démo s'ils manquent.

    Aucun stock n'est créé : le ledger ne bouge que via les workflows.
    Retourne (locations créées, produits créés).
    """
    new_locations = 0
    for code, name in LOCATIONS:
        if not db.get(Location, code):
            db.add(Location(code=code, name=name, active=True))
            new_locations += 1

    new_products = 0
    for pid, sku, description in PRODUCTS:
        if not db.get(Product, pid):
            db.add(Product(id=pid, sku=sku, description=description, uom="unit", active=True))
            new_products += 1

    db.flush()
    return new_locations, new_products


def run_seed():
    configure_logging()
    db = SessionLocal()
    try:
        with db.begin():
            locations, products = seed_reference_data(db)
        logger.info("seed_done", locations_created=locations, products_created=products)
    finally:
        db.close()


if __name__ == "__main__":
    run_seed()
