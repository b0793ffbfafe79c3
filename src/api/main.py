"""
FastAPI application entry point.

The API key store is created here, loaded once from V2DOC_API_KEYS, and
injected into the auth middleware and `app.state`. Tests pass their own store.
"""

from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

from src.api.auth.key_store import ApiKeyStore
from src.api.auth.models import AuthMode
from src.api.exception_handlers import register_exception_handlers
from src.api.middleware.auth import AuthMiddleware, get_auth_mode
from src.api.middleware.rate_limit import (
    GlobalRateLimitMiddleware,
    PerKeyRateLimitMiddleware,
    RateLimitStore,
    RouteRateLimitMiddleware,
)
from src.api.middleware.request_id import RequestIdMiddleware
from src.api.routes import auth, health
from src.api.schemas import ErrorResponse, ServiceInfoResponse

logger = structlog.get_logger(__name__)

API_VERSION = "1.0.0"
SERVICE_NAME = "v2doc API"


def custom_openapi(app: FastAPI) -> dict[str, Any]:
    """Generate the OpenAPI schema with the bearer security scheme."""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    openapi_schema["components"] = openapi_schema.get("components", {})
    openapi_schema["components"]["securitySchemes"] = {
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "API Key",
            "description": "API key authentication. Format: `Authorization: Bearer v2d_...`",
        }
    }
    openapi_schema["security"] = [{"bearerAuth": []}]

    openapi_schema["info"]["x-custom-headers"] = {
        "X-Request-ID": "Unique identifier for request tracing. Auto-generated if not provided.",
        "X-Auth-Warning": "Present when a request was allowed without an API key (warn mode).",
        "X-RateLimit-Limit": "Maximum requests allowed per window.",
        "X-RateLimit-Remaining": "Requests remaining in current window.",
        "X-RateLimit-Reset": "Unix timestamp when the rate limit window resets.",
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


def create_app(
    key_store: ApiKeyStore | None = None,
    auth_mode: AuthMode | None = None,
    rate_limit_store: RateLimitStore | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        key_store: API key store. If not provided, one is created and loaded
            from the environment.
        auth_mode: Auth policy. Defaults to V2DOC_AUTH_MODE, then warn.
        rate_limit_store: Token bucket store shared by the rate limiters.
    """
    app = FastAPI(
        title=SERVICE_NAME,
        description="""
Convert YouTube videos to PDF, Markdown, or HTML.

## Authentication

Pass your API key in the Authorization header:

```
Authorization: Bearer v2d_your-api-key
```

`/`, `/api/v1/health` and the documentation endpoints do not require a key.

## Rate Limiting

Requests are limited per client IP and per API key. Rate limit information
is included in `X-RateLimit-*` response headers.
""",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        responses={
            401: {"model": ErrorResponse, "description": "Missing or invalid API key"},
            429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        },
    )

    app.openapi = lambda: custom_openapi(app)

    if key_store is None:
        key_store = ApiKeyStore()
        key_store.load()

    app.state.key_store = key_store
    app.state.rate_limit_store = rate_limit_store or RateLimitStore()

    _configure_middleware(app, auth_mode or get_auth_mode())

    register_exception_handlers(app)

    @app.get("/", response_model=ServiceInfoResponse, tags=["meta"])
    async def service_info() -> ServiceInfoResponse:
        return ServiceInfoResponse(
            name=SERVICE_NAME,
            version=API_VERSION,
            docs="/docs",
            openapi="/openapi.json",
        )

    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(auth.router, prefix="/api/v1", tags=["auth"])

    return app


def _configure_middleware(app: FastAPI, auth_mode: AuthMode) -> None:
    """
    Configure middleware for the application.

    Middleware execution order (from outermost to innermost):
    1. RequestIdMiddleware - Assigns/preserves X-Request-ID
    2. GlobalRateLimitMiddleware - Per-IP limit, before any key is hashed
    3. AuthMiddleware - Validates API key and sets request.state.auth
    4. PerKeyRateLimitMiddleware - Per-key quota, needs the auth context
    5. RouteRateLimitMiddleware - Tighter limits for expensive routes

    Starlette runs the last added middleware first.
    """
    store = app.state.rate_limit_store

    # Default route limits cover the /api/v1/jobs routers mounted by the conversion service
    app.add_middleware(RouteRateLimitMiddleware, store=store)
    app.add_middleware(PerKeyRateLimitMiddleware, store=store)
    app.add_middleware(AuthMiddleware, key_store=app.state.key_store, mode=auth_mode)
    app.add_middleware(GlobalRateLimitMiddleware, store=store)
    app.add_middleware(RequestIdMiddleware)

    logger.info("Middleware configured", auth_mode=str(auth_mode))


# Create the application instance
app = create_app()
