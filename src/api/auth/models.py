"""
Authentication data models.

Records describe one registered credential. The plaintext key never appears
in any of these models; only its SHA-256 hex digest is kept.
"""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator


class AuthMode(StrEnum):
    """Policy applied to requests that carry no credential."""

    ENFORCE = "enforce"
    WARN = "warn"
    DISABLED = "disabled"


class AuthStatus(StrEnum):
    """How the current request was authenticated."""

    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"
    WARN = "warn"


class RateLimitOverride(BaseModel):
    """Per-key request ceilings consumed by the rate limiter."""

    requests_per_minute: int | None = Field(default=None, ge=1)
    requests_per_day: int | None = Field(default=None, ge=1)


class ApiKeyRecord(BaseModel):
    """A registered API key, stored by hash."""

    id: str
    name: str
    hashed_key: str = Field(pattern=r"^[a-f0-9]{64}$")
    user_id: str
    is_active: bool = True
    expires_at: datetime | None = None
    rate_limit: RateLimitOverride | None = None
    created_at: datetime
    last_used_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # Offset-less timestamps are read as UTC so expiry checks can compare them
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class AuthContext(BaseModel):
    """Request-scoped identity set by the auth middleware."""

    user_id: str = "anonymous"
    api_key_id: str | None = None
    auth_status: AuthStatus = AuthStatus.ANONYMOUS
    rate_limit: RateLimitOverride | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.auth_status == AuthStatus.AUTHENTICATED
