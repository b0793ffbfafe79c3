"""
Error response envelope shared by middleware and exception handlers.

All errors follow:

    {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from typing import Any

from starlette.responses import JSONResponse

# status code -> (error code, default message)
STATUS_ERRORS: dict[int, tuple[str, str]] = {
    400: ("bad_request", "Bad request"),
    401: ("unauthorized", "Unauthorized"),
    403: ("forbidden", "Forbidden"),
    404: ("not_found", "Not found"),
    405: ("method_not_allowed", "Method not allowed"),
    409: ("conflict", "Conflict"),
    422: ("validation_error", "Unprocessable entity"),
    429: ("rate_limited", "Too many requests"),
    500: ("internal_error", "Internal server error"),
    502: ("bad_gateway", "Bad gateway"),
    503: ("service_unavailable", "Service unavailable"),
}


def status_to_code(status_code: int) -> str:
    """Convert HTTP status code to error code."""
    return STATUS_ERRORS.get(status_code, (f"error_{status_code}", ""))[0]


def status_to_message(status_code: int) -> str:
    """Convert HTTP status code to default message."""
    return STATUS_ERRORS.get(status_code, ("", f"Error {status_code}"))[1]


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build a JSON error response in the standard envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)
