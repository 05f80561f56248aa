"""Authentication middleware that extracts and validates bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates it
via :class:`~meal_api.security.TokenManager` and populates
``request.state`` with ``sub`` (consumer, vendor or staff id) and ``role``
for the capability guards in :mod:`meal_api.middleware.rbac`.

Endpoints listed in ``_PUBLIC_PATHS`` bypass token authentication.  The
payment event receiver and the maintenance trigger authenticate with their
own shared secrets instead.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from meal_api.security import TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require a bearer token.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/metrics",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/payments/events",
        "/api/v1/maintenance/daily",
        "/api/v1/maintenance/renewals",
    }
)

# Prefixes that skip auth (static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


def build_token_manager() -> TokenManager:
    """Construct a :class:`TokenManager` from ``AUTH_TOKEN_SECRET`` / ``AUTH_TOKEN_TTL_SECONDS``.

    Outside the ``dev`` platform environment a missing secret is fatal; in
    development a random per-process secret is generated so the service
    still starts.
    """
    secret = os.environ.get("AUTH_TOKEN_SECRET", "")
    if not secret:
        platform_env = os.environ.get("API_PLATFORM_ENV", "dev").lower()
        if platform_env != "dev":
            raise RuntimeError(
                f"AUTH_TOKEN_SECRET must be set when API_PLATFORM_ENV={platform_env}. "
                "Refusing to start with an insecure default secret."
            )
        secret = f"dev-{secrets.token_hex(32)}"
        logger.warning(
            "AUTH_TOKEN_SECRET not set; generated a random per-process dev secret. "
            "Tokens will not survive process restarts."
        )
    ttl = int(os.environ.get("AUTH_TOKEN_TTL_SECONDS", "3600"))
    return TokenManager(SecretStr(secret), ttl_seconds=ttl)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces bearer token authentication.

    On each request the middleware:

    1. Skips public paths (probes, docs, secret-authenticated hooks).
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`TokenManager`.
    4. Stores ``sub`` and ``role`` on ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any, token_manager: TokenManager | None = None) -> None:
        super().__init__(app)
        self._token_manager = token_manager or build_token_manager()
        logger.info("AuthenticationMiddleware initialised")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing Authorization header", "error_code": "NOT_AUTHENTICATED"},
            )

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={
                    "detail": "Authorization header must use Bearer scheme",
                    "error_code": "NOT_AUTHENTICATED",
                },
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            error_msg = str(exc)
            # Expired tokens are 403, anything else is 401.
            if "expired" in error_msg.lower():
                return JSONResponse(
                    status_code=403,
                    content={"detail": "Token has expired", "error_code": "NOT_AUTHENTICATED"},
                )
            return JSONResponse(
                status_code=401,
                content={"detail": f"Invalid token: {error_msg}", "error_code": "NOT_AUTHENTICATED"},
            )

        request.state.sub = claims.sub
        request.state.role = claims.role
        return await call_next(request)
