"""
Health check endpoint.

Exempt from authentication. Reports nothing about registered keys.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        Service status, version and server time.
    """
    return {
        "status": "healthy",
        "version": request.app.version,
        "timestamp": datetime.now(UTC).isoformat(),
    }
