from __future__ import annotations

import hashlib

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import IdempotencyRecord
from backend.services.errors import ValidationError


def normalize_key(idempotency_key: str | None) -> str | None:
    if idempotency_key is None:
        return None
    key = idempotency_key.strip()
    if not key:
        raise ValidationError("Idempotency key must not be blank")
    return key


def hash_key(idempotency_key: str) -> str:
    return hashlib.sha256(f"IDEMP:{idempotency_key}".encode("utf-8")).hexdigest()


def find_replay(db: Session, idempotency_key: str, operation: str) -> int | None:
    """
    Retourne l'id de la ressource produite par une requête déjà jouée avec cette clé.

    Une clé réutilisée pour une autre opération est une erreur de l'appelant.
    """
    rec = db.execute(
        select(IdempotencyRecord).where(IdempotencyRecord.key_hash == hash_key(idempotency_key))
    ).scalar_one_or_none()
    if rec is None:
        return None
    if rec.operation != operation:
        raise ValidationError(
            "Idempotency key already used for a different operation",
            {"operation": rec.operation},
        )
    return int(rec.resource_id)


def remember(db: Session, idempotency_key: str, operation: str, resource_id: int) -> None:
    # même transaction que l'opération : si elle est annulée, la clé aussi
    db.add(
        IdempotencyRecord(
            key_hash=hash_key(idempotency_key),
            operation=operation,
            resource_id=resource_id,
        )
    )
