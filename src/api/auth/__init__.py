# API Authentication
"""
Authentication primitives for API key validation.

The key store holds SHA-256 hashes of registered keys and answers whether a
presented key is currently valid, and for whom.
"""

from src.api.auth.key_store import API_KEY_PREFIX, ApiKeyStore
from src.api.auth.models import (
    ApiKeyRecord,
    AuthContext,
    AuthMode,
    AuthStatus,
    RateLimitOverride,
)

__all__ = [
    "API_KEY_PREFIX",
    "ApiKeyRecord",
    "ApiKeyStore",
    "AuthContext",
    "AuthMode",
    "AuthStatus",
    "RateLimitOverride",
]
