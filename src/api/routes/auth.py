"""
Identity endpoint.

Lets a client check which identity its API key resolves to.
"""

from fastapi import APIRouter

from src.api.dependencies import AuthContextDep, KeyStoreDep
from src.api.schemas import AuthIdentityResponse

router = APIRouter()


@router.get("/auth/me", response_model=AuthIdentityResponse)
async def who_am_i(auth: AuthContextDep, key_store: KeyStoreDep) -> AuthIdentityResponse:
    """Return the identity the current request is authenticated as."""
    record = key_store.find_by_id(auth.api_key_id) if auth.api_key_id else None
    return AuthIdentityResponse(
        user_id=auth.user_id,
        api_key_id=auth.api_key_id,
        key_name=record.name if record else None,
        auth_status=auth.auth_status,
    )
