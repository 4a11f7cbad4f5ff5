"""Service errors and the handlers that map them onto the JSON error envelope
``{error, message, details, correlation_id}``; services raise these instead of ``HTTPException``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.context import get_correlation_id


logger = logging.getLogger("app.errors")


class ServiceError(Exception):
    """Base error for failures raised by service code and rendered as an error envelope."""

    status_code = 500
    category = "Internal Server Error"

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(ServiceError):
    status_code = 400
    category = "Validation Error"


class BadRequestError(ServiceError):
    status_code = 400
    category = "Bad Request"


class OperationNotAllowedError(BadRequestError):
    """Raised when a workflow action is not legal from the entity's current status."""


class OTPError(BadRequestError):
    pass


class UnauthorizedError(ServiceError):
    status_code = 401
    category = "Unauthorized"

    def __init__(self, message: str = "Authentication required", details: Any = None) -> None:
        super().__init__(message, details)


class ForbiddenError(ServiceError):
    status_code = 403
    category = "Forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    category = "Not Found"

    def __init__(self, entity_type: str, entity_id: Any = None) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        message = f"{entity_type} not found" if entity_id is None else f"{entity_type} {entity_id} not found"
        super().__init__(message)


class ConflictError(ServiceError):
    status_code = 409
    category = "Conflict"


class DatabaseError(ServiceError):
    pass


class MisconfigurationError(ServiceError):
    category = "Server misconfiguration"


def error_response(
    request: Request,
    *,
    status_code: int,
    error: str,
    message: str | None = None,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload: dict[str, Any] = {"error": error}
    if message is not None:
        payload["message"] = message
    if details is not None:
        payload["details"] = details
    payload["correlation_id"] = correlation_id
    return JSONResponse(status_code=status_code, content=payload)


_HTTP_CATEGORIES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    429: "Too Many Requests",
}


def _validation_details(exc: RequestValidationError) -> list[dict[str, Any]]:
    details: list[dict[str, Any]] = []
    for issue in exc.errors():
        location = [str(part) for part in issue.get("loc", ()) if part not in {"body", "query", "path"}]
        details.append({"path": ".".join(location), "message": issue.get("msg", "invalid value")})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request.failed", exc_info=exc, extra={"error": exc.message})
        return error_response(
            request,
            status_code=exc.status_code,
            error=exc.category,
            message=exc.message,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            request,
            status_code=400,
            error="Validation Error",
            message="Request validation failed",
            details=_validation_details(exc),
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        category = _HTTP_CATEGORIES.get(exc.status_code, "Internal Server Error")
        return error_response(request, status_code=exc.status_code, error=category, message=str(exc.detail))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error("request.unhandled_exception", exc_info=exc, extra={"error": str(exc)})
        return error_response(
            request,
            status_code=500,
            error="Internal Server Error",
            message="An unexpected error occurred",
        )
