"""
Tests for the token bucket store and rate limit middlewares.
"""

import os
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.api.auth.key_store import ApiKeyStore
from src.api.auth.models import AuthMode, RateLimitOverride
from src.api.middleware.auth import AuthMiddleware
from src.api.middleware.rate_limit import (
    GlobalRateLimitMiddleware,
    PerKeyRateLimitMiddleware,
    RateLimitStore,
    RouteRateLimitMiddleware,
    limit_from_env,
)

LIMITED_KEY = "v2d_limited"
DEFAULT_KEY = "v2d_default"


class TestRateLimitStore:
    """Tests for token bucket accounting."""

    def test_first_request_consumes_one_token(self, rate_limit_store):
        result = rate_limit_store.consume("k", max_tokens=5, window_seconds=60)

        assert result.allowed is True
        assert result.remaining == 4
        assert result.limit == 5

    def test_exhausted_bucket_denies(self, rate_limit_store):
        for _ in range(3):
            assert rate_limit_store.consume("k", 3, 60).allowed

        result = rate_limit_store.consume("k", 3, 60)
        assert result.allowed is False
        assert result.remaining == 0

    def test_tokens_refill_over_time(self, rate_limit_store, fake_clock):
        """
        Given: A 3-per-minute bucket that is empty
        When: 21 seconds pass (just over one token)
        Then: Exactly one more request is allowed
        """
        for _ in range(3):
            rate_limit_store.consume("k", 3, 60)
        assert not rate_limit_store.consume("k", 3, 60).allowed

        fake_clock.advance(21)
        assert rate_limit_store.consume("k", 3, 60).allowed
        assert not rate_limit_store.consume("k", 3, 60).allowed

    def test_refill_capped_at_max(self, rate_limit_store, fake_clock):
        rate_limit_store.consume("k", 3, 60)
        fake_clock.advance(120)

        result = rate_limit_store.consume("k", 3, 60)
        assert result.remaining == 2

    def test_reset_at_when_denied_points_to_next_token(self, rate_limit_store, fake_clock):
        for _ in range(2):
            rate_limit_store.consume("k", 2, 60)

        result = rate_limit_store.consume("k", 2, 60)
        assert not result.allowed
        assert fake_clock.now < result.reset_at <= fake_clock.now + 31

    def test_keys_are_isolated(self, rate_limit_store):
        rate_limit_store.consume("a", 1, 60)

        assert not rate_limit_store.consume("a", 1, 60).allowed
        assert rate_limit_store.consume("b", 1, 60).allowed

    def test_stale_buckets_pruned(self, rate_limit_store, fake_clock):
        rate_limit_store.consume("old", 5, 60)
        fake_clock.advance(601)
        rate_limit_store.consume("new", 5, 60)

        assert rate_limit_store.size == 1

    def test_recent_buckets_kept(self, rate_limit_store, fake_clock):
        rate_limit_store.consume("a", 5, 60)
        fake_clock.advance(301)
        rate_limit_store.consume("b", 5, 60)

        assert rate_limit_store.size == 2

    def test_clear(self, rate_limit_store):
        rate_limit_store.consume("a", 5, 60)
        rate_limit_store.clear()

        assert rate_limit_store.size == 0


class TestLimitFromEnv:
    def test_reads_integer(self):
        with patch.dict(os.environ, {"API_RATE_LIMIT_GLOBAL": "25"}):
            assert limit_from_env("API_RATE_LIMIT_GLOBAL", 60) == 25

    @pytest.mark.parametrize("value", ["abc", "0", "-5"])
    def test_invalid_values_use_default(self, value):
        with patch.dict(os.environ, {"API_RATE_LIMIT_GLOBAL": value}):
            assert limit_from_env("API_RATE_LIMIT_GLOBAL", 60) == 60

    def test_missing_uses_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert limit_from_env("API_RATE_LIMIT_GLOBAL", 60) == 60


@pytest.fixture
def limiter_store():
    store = ApiKeyStore()
    store.load(f"{DEFAULT_KEY}:user-default")
    store.register(
        LIMITED_KEY,
        "user-limited",
        rate_limit=RateLimitOverride(requests_per_minute=2, requests_per_day=50),
    )
    return store


def make_app(
    key_store: ApiKeyStore,
    rate_limit_store: RateLimitStore,
    global_limit: int = 100,
    per_key_limit: int = 5,
) -> FastAPI:
    """App with global, auth, per-key and route limiters in production order."""
    app = FastAPI()
    app.add_middleware(
        RouteRateLimitMiddleware,
        store=rate_limit_store,
        route_overrides={"/api/v1/jobs/sync": (2, 3600)},
    )
    app.add_middleware(PerKeyRateLimitMiddleware, store=rate_limit_store, max_requests=per_key_limit)
    app.add_middleware(AuthMiddleware, key_store=key_store, mode=AuthMode.WARN)
    app.add_middleware(GlobalRateLimitMiddleware, store=rate_limit_store, max_requests=global_limit)

    @app.get("/api/v1/jobs")
    async def list_jobs():
        return {"jobs": []}

    @app.post("/api/v1/jobs/sync")
    async def sync_job():
        return {"status": "done"}

    return app


def _client(app, **kwargs):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test", **kwargs)


class TestGlobalRateLimit:
    """Per-IP limit."""

    @pytest.mark.asyncio
    async def test_limit_enforced_per_ip(self, limiter_store, rate_limit_store):
        """
        Given: Global limit of 3 per minute
        When: 4 requests arrive from the same IP
        Then: The 4th gets 429 with Retry-After
        """
        app = make_app(limiter_store, rate_limit_store, global_limit=3)
        async with _client(app) as client:
            for _ in range(3):
                assert (await client.get("/api/v1/jobs")).status_code == 200

            response = await client.get("/api/v1/jobs")

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"

    @pytest.mark.asyncio
    async def test_uses_last_forwarded_for_entry(self, limiter_store, rate_limit_store):
        """A spoofed first X-Forwarded-For hop does not earn a fresh bucket."""
        app = make_app(limiter_store, rate_limit_store, global_limit=2)
        async with _client(app) as client:
            for spoofed in ("1.1.1.1", "2.2.2.2"):
                response = await client.get(
                    "/api/v1/jobs", headers={"X-Forwarded-For": f"{spoofed}, 203.0.113.7"}
                )
                assert response.status_code == 200

            response = await client.get(
                "/api/v1/jobs", headers={"X-Forwarded-For": "3.3.3.3, 203.0.113.7"}
            )
        assert response.status_code == 429

    @pytest.mark.asyncio
    async def test_different_ips_isolated(self, limiter_store, rate_limit_store):
        app = make_app(limiter_store, rate_limit_store, global_limit=1)
        async with _client(app) as client:
            r1 = await client.get("/api/v1/jobs", headers={"X-Forwarded-For": "203.0.113.1"})
            r2 = await client.get("/api/v1/jobs", headers={"X-Forwarded-For": "203.0.113.2"})
        assert r1.status_code == 200
        assert r2.status_code == 200

    @pytest.mark.asyncio
    async def test_rejected_before_auth(self, limiter_store, rate_limit_store):
        """Over-limit requests are rejected even with an invalid key."""
        app = make_app(limiter_store, rate_limit_store, global_limit=1)
        async with _client(app) as client:
            await client.get("/api/v1/jobs")
            response = await client.get(
                "/api/v1/jobs", headers={"Authorization": "Bearer v2d_wrong"}
            )
        assert response.status_code == 429


class TestPerKeyRateLimit:
    """Per-API-key limit and overrides."""

    @pytest.mark.asyncio
    async def test_default_per_key_limit(self, limiter_store, rate_limit_store):
        app = make_app(limiter_store, rate_limit_store, per_key_limit=3)
        async with _client(app, headers={"Authorization": f"Bearer {DEFAULT_KEY}"}) as client:
            statuses = [(await client.get("/api/v1/jobs")).status_code for _ in range(4)]

        assert statuses == [200, 200, 200, 429]

    @pytest.mark.asyncio
    async def test_key_headers_reported(self, limiter_store, rate_limit_store):
        app = make_app(limiter_store, rate_limit_store, per_key_limit=3)
        async with _client(app, headers={"Authorization": f"Bearer {DEFAULT_KEY}"}) as client:
            response = await client.get("/api/v1/jobs")

        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["X-RateLimit-Remaining"] == "2"
        assert "X-RateLimit-Reset" in response.headers

    @pytest.mark.asyncio
    async def test_per_minute_override(self, limiter_store, rate_limit_store, fake_clock):
        """
        Given: Key with requests_per_minute=2
        When: 3 requests in the same minute
        Then: 3rd is rejected; after a minute passes requests resume
        """
        app = make_app(limiter_store, rate_limit_store, per_key_limit=100)
        async with _client(app, headers={"Authorization": f"Bearer {LIMITED_KEY}"}) as client:
            assert (await client.get("/api/v1/jobs")).status_code == 200
            assert (await client.get("/api/v1/jobs")).status_code == 200

            response = await client.get("/api/v1/jobs")
            assert response.status_code == 429
            assert response.json()["error"]["code"] == "key_rate_limited"

            fake_clock.advance(60)
            assert (await client.get("/api/v1/jobs")).status_code == 200

    @pytest.mark.asyncio
    async def test_daily_override_replaces_default(self, limiter_store, rate_limit_store):
        app = make_app(limiter_store, rate_limit_store, per_key_limit=1)
        async with _client(app, headers={"Authorization": f"Bearer {LIMITED_KEY}"}) as client:
            r1 = await client.get("/api/v1/jobs")
            r2 = await client.get("/api/v1/jobs")

        # Default of 1/day would block r2; the key's own 50/day does not
        assert r1.status_code == 200
        assert r2.status_code == 200

    @pytest.mark.asyncio
    async def test_keys_isolated(self, limiter_store, rate_limit_store):
        app = make_app(limiter_store, rate_limit_store, per_key_limit=1)
        async with _client(app) as client:
            r1 = await client.get(
                "/api/v1/jobs", headers={"Authorization": f"Bearer {DEFAULT_KEY}"}
            )
            r2 = await client.get(
                "/api/v1/jobs", headers={"Authorization": f"Bearer {LIMITED_KEY}"}
            )
        assert r1.status_code == 200
        assert r2.status_code == 200

    @pytest.mark.asyncio
    async def test_anonymous_requests_skip_per_key_limit(self, limiter_store, rate_limit_store):
        app = make_app(limiter_store, rate_limit_store, per_key_limit=1)
        async with _client(app) as client:
            statuses = [(await client.get("/api/v1/jobs")).status_code for _ in range(3)]

        assert statuses == [200, 200, 200]


class TestRouteRateLimit:
    """Per-route overrides."""

    @pytest.mark.asyncio
    async def test_route_override_enforced(self, limiter_store, rate_limit_store):
        app = make_app(limiter_store, rate_limit_store, per_key_limit=100)
        async with _client(app, headers={"Authorization": f"Bearer {DEFAULT_KEY}"}) as client:
            statuses = [(await client.post("/api/v1/jobs/sync")).status_code for _ in range(3)]
            other = await client.get("/api/v1/jobs")

        assert statuses == [200, 200, 429]
        assert other.status_code == 200

    @pytest.mark.asyncio
    async def test_route_limit_headers_take_precedence(self, limiter_store, rate_limit_store):
        app = make_app(limiter_store, rate_limit_store, per_key_limit=100)
        async with _client(app, headers={"Authorization": f"Bearer {DEFAULT_KEY}"}) as client:
            response = await client.post("/api/v1/jobs/sync")

        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"
