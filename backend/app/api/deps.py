from __future__ import annotations

from functools import lru_cache
from typing import Generator

from fastapi import Header

from backend.app.core.config import get_settings
from backend.app.db.session import SessionLocal
from backend.services.coordinator import ReconciliationCoordinator
from backend.services.errors import ValidationError


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_coordinator() -> ReconciliationCoordinator:
    return ReconciliationCoordinator(SessionLocal, get_settings())


def get_actor(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """Identité de l'appelant, fournie par la passerelle d'authentification."""
    if not x_user_id or not x_user_id.strip():
        raise ValidationError("Missing X-User-Id header")
    return x_user_id.strip()
