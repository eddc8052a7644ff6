from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from backend.app.api.v1.router import router as v1_router
from backend.app.core.config import get_settings
from backend.app.core.logging import configure_logging, get_logger
from backend.services.errors import (
    ConflictError,
    InsufficientStockError,
    InvalidStateError,
    NegativeStockError,
    NotFoundError,
    ReconciliationError,
    ValidationError,
)

logger = get_logger(__name__)

EXCEPTION_STATUS_MAP: dict[type[ReconciliationError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_409_CONFLICT,
    ConflictError: status.HTTP_409_CONFLICT,
    InsufficientStockError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NegativeStockError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_code_for(exc: ReconciliationError) -> int:
    for exc_type, code in EXCEPTION_STATUS_MAP.items():
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()

    app = FastAPI(title=settings.app_name, version=settings.app_version)

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
        code = status_code_for(exc)
        if code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.code, message=exc.message)
        else:
            logger.info("request_rejected", path=request.url.path, error=exc.code, status=code)
        return JSONResponse(status_code=code, content=exc.to_dict())

    app.include_router(v1_router, prefix="/v1")
    return app


app = create_app()
