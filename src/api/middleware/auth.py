"""
Authentication middleware for API key validation.

Extracts a bearer credential, asks the key store whether it is valid, and
stores the resulting identity on `request.state.auth`. What happens to
requests without a credential depends on the auth mode:

- enforce: reject with 401
- warn: allow as anonymous, with an X-Auth-Warning header
- disabled: allow everything as anonymous

A credential that is present but invalid is rejected in every mode.
"""

import os
import re

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from src.api.auth.key_store import ApiKeyStore
from src.api.auth.models import AuthContext, AuthMode, AuthStatus
from src.api.errors import error_response

logger = structlog.get_logger(__name__)

AUTH_MODE_ENV_VAR = "V2DOC_AUTH_MODE"
ALTERNATE_HEADER_ENV_VAR = "V2DOC_AUTH_ALTERNATE_HEADER"

# Paths that don't require authentication
EXEMPT_PATHS = {
    "/",
    "/api/v1/health",
    "/docs",
    "/redoc",
    "/openapi.json",
}

AUTH_WARNING_HEADER = "X-Auth-Warning"
AUTH_WARNING_MESSAGE = "API key will be required in a future version. See /docs for details."

_NON_PRINTABLE = re.compile(r"[^\x20-\x7e]")


def sanitize_for_log(value: str, max_length: int = 45) -> str:
    """Strip non-printable characters and truncate client input for logging."""
    return _NON_PRINTABLE.sub("", value)[:max_length]


def get_auth_mode() -> AuthMode:
    """
    Read the auth mode from the environment.

    Unknown values fall back to warn mode.
    """
    raw = os.getenv(AUTH_MODE_ENV_VAR)
    if not raw:
        return AuthMode.WARN

    try:
        return AuthMode(raw.strip().lower())
    except ValueError:
        logger.warning(
            "Invalid auth mode, defaulting to warn",
            env_var=AUTH_MODE_ENV_VAR,
            value=sanitize_for_log(raw),
        )
        return AuthMode.WARN


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Middleware that validates API keys in the Authorization header.

    Skips validation for health check and documentation endpoints.
    """

    def __init__(
        self,
        app,
        key_store: ApiKeyStore,
        mode: AuthMode | None = None,
        exempt_paths: set[str] | None = None,
        alternate_header: str | None = None,
    ) -> None:
        """
        Initialize auth middleware.

        Args:
            app: The ASGI application.
            key_store: Store used to validate presented keys.
            mode: Auth mode. Defaults to V2DOC_AUTH_MODE, then warn.
            exempt_paths: Paths served without authentication.
            alternate_header: Extra header checked when no bearer token is sent.
        """
        super().__init__(app)
        self.key_store = key_store
        self.mode = mode or get_auth_mode()
        self.exempt_paths = exempt_paths if exempt_paths is not None else EXEMPT_PATHS
        self.alternate_header = alternate_header or os.getenv(ALTERNATE_HEADER_ENV_VAR)

        logger.info(
            "AuthMiddleware initialized",
            mode=str(self.mode),
            alternate_header=self.alternate_header,
        )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request and validate API key."""
        if self._is_exempt(request.url.path) or self.mode == AuthMode.DISABLED:
            # Identity headers from the client are never trusted here
            request.state.auth = AuthContext()
            return await call_next(request)

        api_key = self._extract_api_key(request)

        if not api_key:
            if self.mode == AuthMode.WARN:
                logger.warning(
                    "Unauthenticated request",
                    path=sanitize_for_log(request.url.path),
                    method=request.method,
                    client=sanitize_for_log(_client_hint(request)),
                )
                request.state.auth = AuthContext(auth_status=AuthStatus.WARN)
                response = await call_next(request)
                response.headers[AUTH_WARNING_HEADER] = AUTH_WARNING_MESSAGE
                return response

            logger.warning(
                "Missing API key",
                path=sanitize_for_log(request.url.path),
                method=request.method,
            )
            return self._unauthorized_response(
                "unauthorized",
                'Authentication required. Include "Authorization: Bearer <api_key>" header.',
            )

        record = self.key_store.validate(api_key)
        if record is None:
            logger.warning(
                "Invalid API key",
                path=sanitize_for_log(request.url.path),
                method=request.method,
            )
            return self._unauthorized_response(
                "invalid_api_key",
                "The provided API key is invalid, expired, or deactivated.",
            )

        request.state.auth = AuthContext(
            user_id=record.user_id,
            api_key_id=record.id,
            auth_status=AuthStatus.AUTHENTICATED,
            rate_limit=record.rate_limit,
        )

        with structlog.contextvars.bound_contextvars(api_key_id=record.id):
            return await call_next(request)

    def _is_exempt(self, path: str) -> bool:
        """Check if the path is exempt from authentication."""
        if path in self.exempt_paths:
            return True

        # Prefix match, e.g. /api/v1/health/ready or /docs/oauth2-redirect
        return any(
            path.startswith(exempt_path + "/")
            for exempt_path in self.exempt_paths
            if exempt_path != "/"
        )

    def _extract_api_key(self, request: Request) -> str | None:
        """
        Extract the API key from the request.

        Checks Authorization: Bearer first, then the alternate header if one
        is configured.
        """
        auth_header = request.headers.get("Authorization")
        if auth_header:
            token = self._extract_bearer_token(auth_header)
            if token:
                return token

        if self.alternate_header:
            alt_key = request.headers.get(self.alternate_header)
            if alt_key and alt_key.strip():
                return alt_key.strip()

        return None

    def _extract_bearer_token(self, auth_header: str) -> str | None:
        """
        Extract Bearer token from Authorization header.

        Returns None if header is not in "Bearer <token>" format.
        """
        parts = auth_header.split(" ", 1)
        if len(parts) != 2:
            return None

        scheme, token = parts
        if scheme.lower() != "bearer":
            return None

        return token.strip()

    def _unauthorized_response(self, code: str, message: str) -> JSONResponse:
        """Create a 401 Unauthorized response."""
        return error_response(401, code, message, headers={"WWW-Authenticate": "Bearer"})


def _client_hint(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded
    return request.client.host if request.client else "unknown"
