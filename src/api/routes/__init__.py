# API Routes
"""
API route modules.

- health: service health check (no auth)
- auth: identity of the current API key
"""

from src.api.routes import auth, health

__all__ = ["auth", "health"]
