"""
Pydantic schemas for API responses.
"""

from typing import Any

from pydantic import BaseModel, Field

from src.api.auth.models import AuthStatus


class AuthIdentityResponse(BaseModel):
    """Response body for GET /api/v1/auth/me."""

    user_id: str = Field(..., description="Identity the request is authenticated as")
    api_key_id: str | None = Field(
        default=None, description="Short ID of the API key used, if any"
    )
    key_name: str | None = Field(default=None, description="Label of the API key used, if any")
    auth_status: AuthStatus = Field(..., description="authenticated, anonymous or warn")


class ServiceInfoResponse(BaseModel):
    """Response body for GET /."""

    name: str
    version: str
    docs: str
    openapi: str


class ErrorDetail(BaseModel):
    """Error details in the standard envelope."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable message")
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: ErrorDetail
