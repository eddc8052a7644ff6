from fastapi import APIRouter

from backend.app.api.v1.endpoints.health import router as health_router
from backend.app.api.v1.endpoints.locations import router as locations_router
from backend.app.api.v1.endpoints.stock import router as stock_router
from backend.app.api.v1.endpoints.stock_movements import router as stock_movements_router
from backend.app.api.v1.endpoints.adjustments import router as adjustments_router
from backend.app.api.v1.endpoints.cycle_counts import router as cycle_counts_router
from backend.app.api.v1.endpoints.transfers import router as transfers_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(locations_router, tags=["locations"])
router.include_router(stock_router, tags=["stock"])
router.include_router(stock_movements_router, tags=["stock_movements"])
router.include_router(adjustments_router, tags=["adjustments"])
router.include_router(cycle_counts_router, tags=["cycle_counts"])
router.include_router(transfers_router, tags=["transfers"])
