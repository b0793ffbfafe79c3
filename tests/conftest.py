"""
Pytest configuration and shared fixtures.
"""

from collections.abc import Generator

import pytest

from src.api.auth.key_store import ApiKeyStore
from src.api.middleware.rate_limit import RateLimitStore


class FakeClock:
    """Manually advanced clock for rate limit tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def sample_plaintext_key() -> str:
    """Sample plaintext API key."""
    return "v2d_test-key-alice-0001"


@pytest.fixture
def key_store() -> Generator[ApiKeyStore, None, None]:
    """Empty key store, cleared after the test."""
    store = ApiKeyStore()
    yield store
    store.clear()


@pytest.fixture
def populated_key_store(key_store: ApiKeyStore, sample_plaintext_key: str) -> ApiKeyStore:
    """Key store with two users registered."""
    key_store.load(f"{sample_plaintext_key}:user-alice:cli,v2d_test-key-bob-0002:user-bob")
    return key_store


@pytest.fixture
def fake_clock() -> FakeClock:
    """Controllable clock."""
    return FakeClock()


@pytest.fixture
def rate_limit_store(fake_clock: FakeClock) -> RateLimitStore:
    """Rate limit store driven by the fake clock."""
    return RateLimitStore(clock=fake_clock)
