"""
Rate limiting middleware using in-memory token buckets.

Three layers, each its own middleware:
1. Global limit per client IP (runs before auth)
2. Per-API-key limit, honouring the key's own rate limit override
3. Per-route limits for expensive endpoints

Buckets live in a single process; there is no shared backend.
"""

import math
import os
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from src.api.auth.models import AuthContext
from src.api.errors import error_response

logger = structlog.get_logger(__name__)

# Default configuration
DEFAULT_GLOBAL_LIMIT = 60  # requests per minute per IP
DEFAULT_GLOBAL_WINDOW_SECONDS = 60
DEFAULT_PER_KEY_LIMIT = 1000  # requests per day per key
DEFAULT_PER_KEY_WINDOW_SECONDS = 86_400
MINUTE_WINDOW_SECONDS = 60

DEFAULT_ROUTE_OVERRIDES: dict[str, tuple[int, int]] = {
    # path prefix -> (max requests, window seconds)
    "/api/v1/jobs/sync": (10, 3600),
    "/api/v1/jobs": (100, 3600),
}

STALE_BUCKET_SECONDS = 600
CLEANUP_INTERVAL_SECONDS = 300


@dataclass
class TokenBucket:
    """Token bucket for a single rate limit key."""

    tokens: float
    max_tokens: int
    last_refill: float


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    limit: int
    reset_at: int  # Unix timestamp (seconds)


class RateLimitStore:
    """
    In-memory token bucket store.

    Tokens refill continuously at `max_tokens / window` per second, which
    permits short bursts while holding the average rate. Buckets unused for
    ten minutes are pruned.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        stale_after: float = STALE_BUCKET_SECONDS,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        self._clock = clock
        self._stale_after = stale_after
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = clock()

    def consume(self, key: str, max_tokens: int, window_seconds: float) -> RateLimitResult:
        """
        Check the limit for `key` and consume a token if allowed.

        Args:
            key: Bucket identifier, e.g. "global:10.0.0.1" or "key:key_ab12cd34".
            max_tokens: Maximum requests in the window.
            window_seconds: Window duration in seconds.
        """
        now = self._clock()
        self._maybe_cleanup(now)

        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(tokens=max_tokens - 1, max_tokens=max_tokens, last_refill=now)
            self._buckets[key] = bucket
            return RateLimitResult(
                allowed=True,
                remaining=int(bucket.tokens),
                limit=max_tokens,
                reset_at=math.ceil(now + window_seconds),
            )

        refill_rate = max_tokens / window_seconds
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.max_tokens = max_tokens
        bucket.tokens = min(max_tokens, bucket.tokens + elapsed * refill_rate)
        bucket.last_refill = now

        if bucket.tokens < 1:
            time_to_next_token = (1 - bucket.tokens) / refill_rate
            return RateLimitResult(
                allowed=False,
                remaining=0,
                limit=max_tokens,
                reset_at=math.ceil(now + time_to_next_token),
            )

        bucket.tokens -= 1
        return RateLimitResult(
            allowed=True,
            remaining=int(bucket.tokens),
            limit=max_tokens,
            reset_at=math.ceil(now + window_seconds),
        )

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now

        threshold = now - self._stale_after
        stale = [key for key, bucket in self._buckets.items() if bucket.last_refill < threshold]
        for key in stale:
            del self._buckets[key]

        if stale:
            logger.info(
                "Cleaned up stale rate limit buckets",
                removed=len(stale),
                active=len(self._buckets),
            )

    def now(self) -> float:
        return self._clock()

    @property
    def size(self) -> int:
        """Number of active buckets."""
        return len(self._buckets)

    def clear(self) -> None:
        """Drop all buckets."""
        self._buckets.clear()


def limit_from_env(env_var: str, default: int) -> int:
    """Read a positive integer limit from the environment."""
    raw = os.getenv(env_var)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid rate limit, using default", env_var=env_var, value=raw[:20])
        return default
    if value < 1:
        logger.warning("Invalid rate limit, using default", env_var=env_var, value=value)
        return default
    return value


def get_client_ip(request: Request) -> str:
    """
    Get the client IP for rate limiting.

    The load balancer appends the real client IP as the LAST X-Forwarded-For
    entry; earlier entries are client-controlled.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ips = [ip.strip() for ip in forwarded.split(",")]
        return ips[-1] or "127.0.0.1"

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


def _get_auth(request: Request) -> AuthContext:
    return getattr(request.state, "auth", None) or AuthContext()


class _TokenBucketMiddleware(BaseHTTPMiddleware):
    """Shared response handling for the rate limit middlewares."""

    def __init__(self, app, store: RateLimitStore) -> None:
        super().__init__(app)
        self.store = store

    async def _respond(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
        results: list[RateLimitResult],
        code: str,
        message: str,
    ) -> Response:
        denied = next((r for r in results if not r.allowed), None)
        if denied is not None:
            return self._rate_limited_response(denied, code, message)

        response = await call_next(request)
        if results:
            # Inner middlewares run first, so the most specific limit wins
            tightest = min(results, key=lambda r: r.remaining)
            response.headers.setdefault("X-RateLimit-Limit", str(tightest.limit))
            response.headers.setdefault("X-RateLimit-Remaining", str(max(0, tightest.remaining)))
            response.headers.setdefault("X-RateLimit-Reset", str(tightest.reset_at))
        return response

    def _rate_limited_response(
        self, result: RateLimitResult, code: str, message: str
    ) -> JSONResponse:
        """Create a 429 Too Many Requests response."""
        retry_after = max(1, result.reset_at - int(self.store.now()))
        return error_response(
            429,
            code,
            message,
            details={"retry_after_seconds": retry_after},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(result.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(result.reset_at),
            },
        )


class GlobalRateLimitMiddleware(_TokenBucketMiddleware):
    """
    Per-IP limit applied to every request regardless of authentication.

    Runs before auth so floods are rejected before any key is hashed.
    """

    def __init__(
        self,
        app,
        store: RateLimitStore,
        max_requests: int | None = None,
        window_seconds: int = DEFAULT_GLOBAL_WINDOW_SECONDS,
    ) -> None:
        super().__init__(app, store)
        self.max_requests = max_requests or limit_from_env(
            "API_RATE_LIMIT_GLOBAL", DEFAULT_GLOBAL_LIMIT
        )
        self.window_seconds = window_seconds

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        client_ip = get_client_ip(request)
        result = self.store.consume(f"global:{client_ip}", self.max_requests, self.window_seconds)
        if not result.allowed:
            logger.warning("Global rate limit exceeded", limit=self.max_requests)

        return await self._respond(
            request,
            call_next,
            [result],
            "rate_limited",
            "Too many requests. Please retry after the specified time.",
        )


class PerKeyRateLimitMiddleware(_TokenBucketMiddleware):
    """
    Per-API-key limit for authenticated requests.

    The key's `rate_limit.requests_per_day` replaces the default daily
    ceiling; `rate_limit.requests_per_minute` adds a per-minute bucket.
    Anonymous requests are left to the global limit.
    """

    def __init__(
        self,
        app,
        store: RateLimitStore,
        max_requests: int | None = None,
        window_seconds: int = DEFAULT_PER_KEY_WINDOW_SECONDS,
    ) -> None:
        super().__init__(app, store)
        self.max_requests = max_requests or limit_from_env(
            "API_RATE_LIMIT_PER_KEY", DEFAULT_PER_KEY_LIMIT
        )
        self.window_seconds = window_seconds

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        auth = _get_auth(request)
        if not auth.is_authenticated or not auth.api_key_id:
            return await call_next(request)

        override = auth.rate_limit
        daily_limit = self.max_requests
        if override and override.requests_per_day:
            daily_limit = override.requests_per_day

        results = [
            self.store.consume(f"key:{auth.api_key_id}", daily_limit, self.window_seconds)
        ]
        if override and override.requests_per_minute:
            results.append(
                self.store.consume(
                    f"key-minute:{auth.api_key_id}",
                    override.requests_per_minute,
                    MINUTE_WINDOW_SECONDS,
                )
            )

        if not all(r.allowed for r in results):
            logger.warning("API key rate limit exceeded", api_key_id=auth.api_key_id)

        return await self._respond(
            request,
            call_next,
            results,
            "key_rate_limited",
            "API key quota exceeded. Please retry after the specified time.",
        )


class RouteRateLimitMiddleware(_TokenBucketMiddleware):
    """Tighter limits for specific route prefixes, per user."""

    def __init__(
        self,
        app,
        store: RateLimitStore,
        route_overrides: dict[str, tuple[int, int]] | None = None,
    ) -> None:
        super().__init__(app, store)
        self.route_overrides = (
            route_overrides if route_overrides is not None else DEFAULT_ROUTE_OVERRIDES
        )

    def _match(self, path: str) -> tuple[str, tuple[int, int]] | None:
        for route, config in self.route_overrides.items():
            if path == route or path.startswith(route + "/"):
                return route, config
        return None

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        match = self._match(request.url.path)
        if match is None:
            return await call_next(request)

        route, (max_requests, window_seconds) = match
        auth = _get_auth(request)
        identity = auth.user_id if auth.is_authenticated else f"ip:{get_client_ip(request)}"
        result = self.store.consume(f"route:{route}:{identity}", max_requests, window_seconds)
        if not result.allowed:
            logger.warning("Route rate limit exceeded", route=route, limit=max_requests)

        return await self._respond(
            request,
            call_next,
            [result],
            "route_rate_limited",
            f"Too many requests to {route}. Please retry after the specified time.",
        )
