from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Header, Query, status

from backend.app.api.deps import get_actor, get_coordinator
from backend.app.db.models.core_types import AdjustmentReason, AdjustmentStatus
from backend.app.schemas.adjustment import AdjustmentCreate, AdjustmentRead, AdjustmentReject, AdjustmentSummary
from backend.app.schemas.common import Page
from backend.services.coordinator import ReconciliationCoordinator

router = APIRouter(prefix="/adjustments")


@router.post("", response_model=AdjustmentRead, status_code=status.HTTP_201_CREATED)
def submit_adjustment(
    payload: AdjustmentCreate,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return coordinator.submit_adjustment(payload, actor, idempotency_key=idempotency_key)


@router.get("", response_model=Page[AdjustmentSummary])
def list_adjustments(
    location: str | None = None,
    status_filter: AdjustmentStatus | None = Query(default=None, alias="status"),
    reason: AdjustmentReason | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.list_adjustments(
        location=location,
        status=status_filter,
        reason=reason,
        start=start,
        end=end,
        page=page,
        page_size=page_size,
    )


@router.get("/{adjustment_id}", response_model=AdjustmentRead)
def get_adjustment(adjustment_id: int, coordinator: ReconciliationCoordinator = Depends(get_coordinator)):
    return coordinator.get_adjustment(adjustment_id)


@router.post("/{adjustment_id}/approve", response_model=AdjustmentRead)
def approve_adjustment(
    adjustment_id: int,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.approve_adjustment(adjustment_id, actor)


@router.post("/{adjustment_id}/refresh", response_model=AdjustmentRead)
def refresh_adjustment(
    adjustment_id: int,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.refresh_adjustment(adjustment_id, actor)


@router.post("/{adjustment_id}/reject", response_model=AdjustmentRead)
def reject_adjustment(
    adjustment_id: int,
    payload: AdjustmentReject,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.reject_adjustment(adjustment_id, actor, payload.reason)


@router.post("/{adjustment_id}/cancel", response_model=AdjustmentRead)
def cancel_adjustment(
    adjustment_id: int,
    actor: str = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.cancel_adjustment(adjustment_id, actor)
