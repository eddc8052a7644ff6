from __future__ import annotations

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import DocumentCounter, utcnow
from backend.services.errors import ConflictError

ADJUSTMENT_PREFIX = "ADJ"
CYCLE_COUNT_PREFIX = "CC"
TRANSFER_PREFIX = "TR"


def next_document_number(db: Session, prefix: str) -> str:
    """
    Numéro lisible au format PREFIX-YYYY-NNNNN, compteur remis à 1 chaque année.

    Le compteur est incrémenté par compare-and-swap dans la transaction de
    l'appelant ; une course perdue lève ConflictError (rejouable).
    """
    year = utcnow().year

    row = db.execute(
        select(DocumentCounter.year, DocumentCounter.count).where(DocumentCounter.name == prefix)
    ).one_or_none()

    if row is None:
        count = 1
        try:
            db.execute(insert(DocumentCounter).values(name=prefix, year=year, count=count))
        except IntegrityError as exc:
            raise ConflictError(f"Counter {prefix} was created concurrently") from exc
    else:
        stored_year, stored_count = row
        count = 1 if stored_year != year else stored_count + 1
        result = db.execute(
            update(DocumentCounter)
            .where(DocumentCounter.name == prefix)
            .where(DocumentCounter.year == stored_year)
            .where(DocumentCounter.count == stored_count)
            .values(year=year, count=count)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(f"Counter {prefix} changed concurrently")

    return f"{prefix}-{year}-{count:05d}"
