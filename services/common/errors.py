"""
Application error taxonomy shared by the order and inventory services.

Domain operations raise these errors; the FastAPI handlers registered by
register_error_handlers() turn them into JSON error bodies, and the event
consumers treat them as non-retryable.
"""
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)


class AppError(Exception):
    """
    Base class for expected, classified application errors.

    Attributes:
        message (str): Human-readable description
        status_code (int): HTTP status used at the API boundary
        code (str): Stable machine-readable error code
        details (Any): Optional structured context
    """
    status_code = 500
    code = "APPLICATION_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(AppError):
    """Referenced order, warehouse or inventory row does not exist."""
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any):
        super().__init__(f"{resource} with id '{identifier}' not found")
        self.resource = resource
        self.identifier = identifier


class ValidationError(AppError):
    """Malformed or semantically invalid input."""
    status_code = 400
    code = "VALIDATION_ERROR"


class ConflictError(AppError):
    """Input collides with existing state (e.g. a duplicate key)."""
    status_code = 409
    code = "CONFLICT"


class InvalidStateError(AppError):
    """Requested transition is not legal from the aggregate's current state."""
    status_code = 409
    code = "INVALID_STATE"

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(message, details={"current_state": current_state} if current_state else None)
        self.current_state = current_state


def _error_body(code: str, message: str, details: Optional[Any] = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details}}


def register_error_handlers(app: FastAPI) -> None:
    """
    Register exception handlers that render the shared error format.

    Args:
        app: FastAPI application to attach the handlers to
    """

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.code, exc.message, exc.details),
        )

    @app.exception_handler(IntegrityError)
    async def handle_integrity_error(request: Request, exc: IntegrityError):
        logger.warning(f"{request.method} {request.url.path} integrity violation: {exc.orig}")
        return JSONResponse(
            status_code=409,
            content=_error_body("CONFLICT", "Resource already exists or violates a constraint"),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content=_error_body("INTERNAL_ERROR", "An unexpected error occurred"),
        )
