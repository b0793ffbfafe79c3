"""
Request ID middleware for request tracing.

Every request gets an X-Request-ID. A client-supplied ID is kept when it is
a short token of safe characters; anything else is replaced so it cannot be
used to inject content into logs.
"""

import re
import uuid
from contextvars import ContextVar

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Context variable for request ID
request_id_context: ContextVar[str | None] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"

_VALID_REQUEST_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")


def get_request_id() -> str | None:
    """Get the current request ID from context."""
    return request_id_context.get()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware that assigns a unique X-Request-ID to each request.

    The ID is added to response headers and bound to the structlog context.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER)
        if not request_id or not _VALID_REQUEST_ID.fullmatch(request_id):
            request_id = str(uuid.uuid4())

        token = request_id_context.set(request_id)
        try:
            request.state.request_id = request_id
            with structlog.contextvars.bound_contextvars(request_id=request_id):
                response = await call_next(request)

            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            request_id_context.reset(token)
