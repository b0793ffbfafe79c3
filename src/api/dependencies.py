"""
FastAPI dependencies for dependency injection.

The key store is created once by `create_app` and kept on `app.state`;
handlers reach it through these dependencies rather than a module global.
"""

from typing import Annotated

from fastapi import Depends, Request

from src.api.auth.key_store import ApiKeyStore
from src.api.auth.models import AuthContext


def get_key_store(request: Request) -> ApiKeyStore:
    """Get the application's API key store."""
    return request.app.state.key_store


def get_auth_context(request: Request) -> AuthContext:
    """
    Get the identity set by the auth middleware.

    Falls back to an anonymous context when auth middleware is not installed.
    """
    return getattr(request.state, "auth", None) or AuthContext()


# Type aliases for dependency injection
KeyStoreDep = Annotated[ApiKeyStore, Depends(get_key_store)]
AuthContextDep = Annotated[AuthContext, Depends(get_auth_context)]
