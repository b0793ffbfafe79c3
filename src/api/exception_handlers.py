"""
Global exception handlers for consistent error responses.

Stack traces are never exposed in production.
"""

import os
import traceback

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.api.errors import error_response, status_to_code, status_to_message
from src.api.middleware.request_id import get_request_id

logger = structlog.get_logger(__name__)


def is_production_mode() -> bool:
    """Check if running in production mode."""
    env = os.getenv("ENVIRONMENT", "development").lower()
    return env in ("production", "prod")


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register global exception handlers on the FastAPI app.

    Args:
        app: The FastAPI application.
    """

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        field_errors = [
            {
                "field": ".".join(str(part) for part in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]

        logger.warning(
            "Request validation error",
            path=request.url.path,
            error_count=len(field_errors),
        )

        return error_response(
            422,
            "validation_error",
            "Request validation failed",
            details={"errors": field_errors},
            headers=_get_error_headers(request),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Handle HTTP exceptions (404, 405, etc.)."""
        headers = _get_error_headers(request)
        if exc.headers:
            headers.update(exc.headers)

        # Detail may already be in our error format
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=headers)

        if exc.status_code >= 500:
            logger.error(
                "HTTP error",
                status_code=exc.status_code,
                path=request.url.path,
                detail=exc.detail,
            )
        else:
            logger.warning(
                "HTTP error",
                status_code=exc.status_code,
                path=request.url.path,
            )

        return error_response(
            exc.status_code,
            status_to_code(exc.status_code),
            str(exc.detail) if exc.detail else status_to_message(exc.status_code),
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )

        details = None
        if not is_production_mode():
            details = {
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
                "traceback": traceback.format_exception(exc),
            }

        return error_response(
            500,
            "internal_error",
            "An internal error occurred. Please try again later.",
            details=details,
            headers=_get_error_headers(request),
        )


def _get_error_headers(request: Request) -> dict[str, str]:
    """Headers to include in error responses."""
    headers = {}
    request_id = getattr(request.state, "request_id", None) or get_request_id()
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers
