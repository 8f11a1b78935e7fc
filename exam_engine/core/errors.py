"""
Typed engine errors and their HTTP rendering.

Services raise these; the handlers registered by ``register_error_handlers``
turn them into ``{"error": {...}}`` JSON bodies at the request boundary.
"""
import logging
from typing import Any, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class EngineError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "engine_error"

    def __init__(self, message: str, details: Optional[List[Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(EngineError):
    """Malformed or missing input. No state was changed."""
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "validation_error"


class NotFoundError(EngineError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "not_found"


class ForbiddenError(EngineError):
    status_code = status.HTTP_403_FORBIDDEN
    error_type = "forbidden"


class ConflictError(EngineError):
    """Invalid state transition or a precondition the caller cannot fix by retrying."""
    status_code = status.HTTP_409_CONFLICT
    error_type = "conflict"


class TransientStorageError(EngineError):
    """Storage was unavailable; the caller may retry. The engine never retries itself."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_type = "transient_storage_error"


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        if exc.status_code >= 500:
            logger.warning(f"{exc.error_type} on {request.url.path}: {exc.message}")
        body = {"message": exc.message, "type": exc.error_type, "status_code": exc.status_code}
        if exc.details:
            body["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content={"error": body})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"message": exc.detail, "type": "http_error", "status_code": exc.status_code}},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": {
                "message": "Validation error",
                "type": "validation_error",
                "status_code": status.HTTP_422_UNPROCESSABLE_ENTITY,
                "details": jsonable_encoder(exc.errors()),
            }},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": {"message": "An internal error occurred", "type": "internal_error", "status_code": 500}},
        )
