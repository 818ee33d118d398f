"""Global exception handlers for consistent error responses.

Design:
- ConfigError / ValidationAppError → 400
- AuthenticationAppError → 403
- PolicyNotFoundError → 404
- Unexpected Exception → generic 500 (no internals leaked)
- All bodies are ``{"error": {code, message, request_id, details?}}``

Denied admissions never reach these handlers; the route dependency answers
them with a plain 429.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from admission.core.errors import AppError, AuthenticationAppError, PolicyNotFoundError
from admission.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _status_for(exc: AppError) -> int:
    if isinstance(exc, AuthenticationAppError):
        return 403
    if isinstance(exc, PolicyNotFoundError):
        return 404
    return 400


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Translate a domain error into a JSON error response."""
    status_code = _status_for(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details:
        error_content["details"] = exc.details

    return JSONResponse(status_code=status_code, content={"error": error_content})


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for unexpected errors; logs details, returns a generic body."""
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the handlers on ``app``."""
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
