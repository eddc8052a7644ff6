from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_coordinator
from backend.app.schemas.location import LocationRead
from backend.services.coordinator import ReconciliationCoordinator

router = APIRouter(prefix="/locations")


@router.get("", response_model=list[LocationRead])
def list_locations(coordinator: ReconciliationCoordinator = Depends(get_coordinator)):
    return coordinator.list_locations()
