import os

# Avant tout import backend.* : le moteur module-level ne doit pas viser Postgres
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from backend.app.core.config import Settings  # noqa: E402
from backend.app.db.base import Base  # noqa: E402
from backend.app.db.models import models_v1  # noqa: F401,E402
from backend.app.db.models.core_types import AdjustmentReason  # noqa: E402
from backend.app.db.seed import seed_reference_data  # noqa: E402
from backend.app.db.session import make_engine, make_session_factory  # noqa: E402
from backend.app.schemas.adjustment import AdjustmentCreate, AdjustmentLineCreate  # noqa: E402
from backend.services.coordinator import ReconciliationCoordinator  # noqa: E402


@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    Base SQLite fichier, neuve pour chaque test.

    Un fichier (et non :memory:) pour que plusieurs connexions / threads
    voient la même base.
    """
    eng = make_engine(f"sqlite:///{tmp_path / 'reconciliation.db'}")
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    factory = make_session_factory(engine)
    db = factory()
    with db.begin():
        seed_reference_data(db)
    db.close()
    return factory


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    """Session de service : tout est rollback à la fin du test."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        environment="test",
        conflict_retry_attempts=3,
        conflict_retry_backoff_seconds=0,
        require_distinct_approver=True,
    )


@pytest.fixture(scope="function")
def coordinator(session_factory, settings) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(session_factory, settings, sleep=lambda _: None)


@pytest.fixture(scope="function")
def stock_up(coordinator):
    """
    Pose un stock initial via le workflow normal (ajustement INITIAL_COUNT
    soumis puis approuvé par un second utilisateur).
    """

    def _stock_up(location: str, quantities: dict[str, int]):
        adj = coordinator.submit_adjustment(
            AdjustmentCreate(
                location=location,
                reason=AdjustmentReason.initial_count,
                lines=[
                    AdjustmentLineCreate(product_id=pid, adjusted_quantity=qty)
                    for pid, qty in quantities.items()
                ],
            ),
            "setup-clerk",
        )
        return coordinator.approve_adjustment(adj.id, "setup-manager")

    return _stock_up


@pytest.fixture(scope="function")
def client(coordinator, session_factory):
    from backend.app.api.deps import get_coordinator, get_db
    from backend.app.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
