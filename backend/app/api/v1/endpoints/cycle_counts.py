from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Query, status

from backend.app.api.deps import get_actor, get_coordinator
from backend.app.db.models.core_types import CycleCountStatus
from backend.app.schemas.common import Page
from backend.app.schemas.cycle_count import (
    CountEntry,
    CycleCountConversion,
    CycleCountCounterView,
    CycleCountCreate,
    CycleCountReviewView,
    CycleCountSummary,
)
from backend.services.coordinator import ReconciliationCoordinator

router = APIRouter(prefix="/cycle-counts")


@router.post("", response_model=CycleCountCounterView, status_code=status.HTTP_201_CREATED)
def create_cycle_count(
    payload: CycleCountCreate,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return coordinator.create_cycle_count(payload, actor, idempotency_key=idempotency_key)


@router.get("", response_model=Page[CycleCountSummary])
def list_cycle_counts(
    location: str | None = None,
    status_filter: CycleCountStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.list_cycle_counts(location=location, status=status_filter, page=page, page_size=page_size)


@router.get("/{session_id}", response_model=CycleCountCounterView)
def get_cycle_count(session_id: int, coordinator: ReconciliationCoordinator = Depends(get_coordinator)):
    """Vue compteur : jamais de quantité système (comptage à l'aveugle)."""
    return coordinator.get_cycle_count(session_id)


@router.get("/{session_id}/review", response_model=CycleCountReviewView)
def review_cycle_count(session_id: int, coordinator: ReconciliationCoordinator = Depends(get_coordinator)):
    return coordinator.review_cycle_count(session_id)


@router.put("/{session_id}/counts", response_model=CycleCountCounterView)
def record_count(
    session_id: int,
    payload: CountEntry,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.record_count(session_id, payload, actor)


@router.post("/{session_id}/complete", response_model=CycleCountReviewView)
def complete_cycle_count(
    session_id: int,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.complete_cycle_count(session_id, actor)


@router.post("/{session_id}/convert", response_model=CycleCountConversion)
def convert_cycle_count(
    session_id: int,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.convert_cycle_count(session_id, actor)


@router.post("/{session_id}/cancel", response_model=CycleCountCounterView)
def cancel_cycle_count(
    session_id: int,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.cancel_cycle_count(session_id, actor)
