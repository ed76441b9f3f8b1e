"""
Standardized error response handling for the AIPLabels API.

Standard Error Response Format:
{
    "error": {
        "code": "error_code",       # Machine-readable error code
        "message": "Human-readable message",
        "details": {...}            # Optional additional context
    },
    "request_id": "abc123"          # Optional request correlation ID
}

Label operation endpoints answer with their own envelope instead (see
``aiplabels.server.routes.labels``); this module covers everything else,
plus the shared ``ErrorKind`` to HTTP status mapping.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from aiplabels.exceptions import AIPLabelsError, ConsentRequiredError, ErrorKind
from aiplabels.server.logging import get_request_id

logger = logging.getLogger(__name__)


# =============================================================================
# Error kind -> HTTP status
# =============================================================================


ERROR_KIND_STATUS: dict[ErrorKind, int] = {
    ErrorKind.CONSENT_REQUIRED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INVALID_TOKEN: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INVALID_LOCATOR: status.HTTP_400_BAD_REQUEST,
    ErrorKind.LABEL_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.TOKEN_EXCHANGE: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.STORAGE: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.PROTECTION: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.CONFIGURATION: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for(kind: ErrorKind) -> int:
    return ERROR_KIND_STATUS.get(kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def challenge_headers(exc: BaseException) -> dict[str, str] | None:
    """``WWW-Authenticate`` header telling the client to sign in again."""
    if isinstance(exc, ConsentRequiredError):
        value = 'Bearer error="interaction_required"'
        if exc.claims:
            value += f', claims="{exc.claims}"'
        return {"WWW-Authenticate": value}
    return None


# =============================================================================
# Helper Functions
# =============================================================================


def create_error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
    request_id: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """
    Create a standardized error JSONResponse.

    Args:
        status_code: HTTP status code
        code: Machine-readable error code
        message: Human-readable error message
        details: Optional additional error details
        request_id: Optional request correlation ID
        headers: Optional response headers

    Returns:
        JSONResponse with standardized error format
    """
    error_body: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
        }
    }

    if details:
        error_body["error"]["details"] = details

    # Include request ID if available
    if request_id is None:
        request_id = get_request_id()
    if request_id:
        error_body["request_id"] = request_id

    return JSONResponse(
        status_code=status_code,
        content=error_body,
        headers=headers,
    )


HTTP_STATUS_TO_ERROR_CODE = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    413: "request_too_large",
    422: "validation_error",
    500: "internal_error",
    502: "bad_gateway",
    503: "service_unavailable",
    504: "gateway_timeout",
}


def get_error_code_for_status(status_code: int) -> str:
    """Get the standard error code for an HTTP status code."""
    return HTTP_STATUS_TO_ERROR_CODE.get(status_code, "error")


# =============================================================================
# Exception Handlers (to be registered with FastAPI app)
# =============================================================================


async def domain_error_handler(request: Request, exc: AIPLabelsError) -> JSONResponse:
    """Render an ``AIPLabelsError`` with the status of its kind."""
    status_code = status_for(exc.kind)
    if status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    else:
        logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)

    settings = getattr(request.app.state, "settings", None)
    debug = bool(settings and settings.server.debug)
    return create_error_response(
        status_code=status_code,
        code=exc.kind.value,
        message=exc.message,
        details=exc.details if debug or status_code < 500 else None,
        headers=challenge_headers(exc),
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """
    Handle FastAPI HTTPException with standardized format.

    Converts the standard HTTPException (which returns {"detail": "..."})
    to our standardized format.
    """
    error_code = get_error_code_for_status(exc.status_code)

    # Handle both string and dict detail
    if isinstance(exc.detail, dict):
        message = exc.detail.get("message", str(exc.detail))
        details = exc.detail if "message" not in exc.detail else None
    else:
        message = str(exc.detail)
        details = None

    return create_error_response(
        status_code=exc.status_code,
        code=error_code,
        message=message,
        details=details,
        headers=getattr(exc, "headers", None),
    )


async def starlette_http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTPException with standardized format."""
    error_code = get_error_code_for_status(exc.status_code)
    message = str(exc.detail) if exc.detail else "An error occurred"

    return create_error_response(
        status_code=exc.status_code,
        code=error_code,
        message=message,
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle request body / query validation errors."""
    errors = []
    for error in exc.errors():
        field_path = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field_path,
            "message": error["msg"],
            "type": error["type"],
        })

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="validation_error",
        message="Request validation failed",
        details={"errors": errors},
    )


async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Handle unexpected exceptions with standardized format.

    In debug mode, includes the exception message.
    In production, returns a generic message.
    """
    logger.exception(
        "Unhandled exception: %s",
        exc,
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    settings = getattr(request.app.state, "settings", None)
    debug = bool(settings and settings.server.debug)
    message = str(exc) if debug else "An unexpected error occurred"

    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="internal_error",
        message=message,
    )


def register_exception_handlers(app) -> None:
    """
    Register all standardized exception handlers with a FastAPI app.

    Usage:
        from aiplabels.server.errors import register_exception_handlers
        register_exception_handlers(app)
    """
    app.add_exception_handler(AIPLabelsError, domain_error_handler)

    # FastAPI/Starlette HTTP exceptions
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)

    # Validation errors
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # General exception handler (must be last)
    app.add_exception_handler(Exception, general_exception_handler)
