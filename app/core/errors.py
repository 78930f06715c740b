"""
Error taxonomy and central error handling for the GeoWork tracking engine

Engine components raise the typed errors below; the FastAPI handlers render
them (and framework errors) in one JSON shape:
{"error": true, "status_code": ..., "detail": ..., "path": ...}
"""
import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi import HTTPException

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Base class for errors raised by the tracking engine"""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "engine_error"

    def __init__(self, message: str, *, code: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            detail["context"] = self.context
        return detail


class PreconditionError(EngineError):
    """
    The action is not valid for the session right now (e.g. clock-out while
    not clocked in, clock-in outside the geofence). Never mutates state.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    code = "precondition_failed"


class ConflictError(EngineError):
    """
    State diverged across writers: a concurrent save since load, or an input
    older than an already committed event. Caller must reload and re-evaluate.
    """

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"

    OUT_OF_ORDER = "out_of_order_event"
    STALE_SNAPSHOT = "stale_snapshot"
    DUPLICATE_SESSION = "duplicate_session"


class MalformedInputError(EngineError):
    """Input that can never be valid (e.g. schedule ending before it starts)."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "malformed_input"


class NotFoundError(EngineError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"


def _error_body(request: Request, status_code: int, detail: Any) -> Dict[str, Any]:
    return {
        "error": True,
        "status_code": status_code,
        "detail": detail,
        "path": str(request.url.path)
    }


async def engine_exception_handler(request: Request, exc: EngineError) -> JSONResponse:
    """
    Handle EngineError subclasses with consistent JSON response format

    Args:
        request: FastAPI request object
        exc: EngineError instance

    Returns:
        JSONResponse with the typed error code and message
    """
    if exc.status_code >= 500:
        logger.error("Engine error on %s: %s", request.url.path, exc.message)
    else:
        logger.info("Rejected request on %s: %s (%s)", request.url.path, exc.message, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.to_detail()),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """
    Handle HTTPException with consistent JSON response format

    Args:
        request: FastAPI request object
        exc: HTTPException instance

    Returns:
        JSONResponse with error details
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handle RequestValidationError with consistent JSON response format

    Does not leak internal validation details in production.
    """
    from app.core.config import settings

    if settings.APP_ENV == "prod":
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body(request, 422, "Validation error: Invalid request data"),
        )

    # ctx may carry exception instances (e.g. ValueError from a validator); stringify them
    errors = []
    for e in exc.errors():
        err = dict(e)
        if "ctx" in err and isinstance(err["ctx"], dict):
            err["ctx"] = {
                k: (str(v) if not isinstance(v, (str, int, float, bool, type(None))) else v)
                for k, v in err["ctx"].items()
            }
        errors.append(err)
    body = _error_body(request, 422, "Validation error")
    body["errors"] = errors
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected exceptions with consistent JSON response format

    Does not leak internal error details in production.
    """
    from app.core.config import settings

    logger.error("Unhandled exception: %s", exc, exc_info=True)

    if settings.APP_ENV == "prod":
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(request, 500, "Internal server error"),
        )

    body = _error_body(request, 500, str(exc))
    body["traceback"] = traceback.format_exc() if settings.APP_ENV == "local" else None
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)
