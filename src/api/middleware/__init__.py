# API Middleware
"""
Middleware components for the API.

- Request ID tracking
- Global, per-key and per-route rate limiting
- API key authentication
"""

from src.api.middleware.auth import AuthMiddleware, get_auth_mode
from src.api.middleware.rate_limit import (
    GlobalRateLimitMiddleware,
    PerKeyRateLimitMiddleware,
    RateLimitStore,
    RouteRateLimitMiddleware,
)
from src.api.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "AuthMiddleware",
    "GlobalRateLimitMiddleware",
    "PerKeyRateLimitMiddleware",
    "RateLimitStore",
    "RequestIdMiddleware",
    "RouteRateLimitMiddleware",
    "get_auth_mode",
    "get_request_id",
]
