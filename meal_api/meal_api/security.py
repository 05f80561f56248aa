"""Bearer token issue and verification.

Tokens have the form ``mc1.<urlsafe-base64 payload>.<hex hmac-sha256>``
where the signature covers the JSON payload bytes.  The payload carries the
subject (consumer id, vendor id or staff id), its ``role`` and the
issued-at / expiry timestamps.  The identity provider that mints tokens for
real users is an external collaborator; :meth:`TokenManager.generate_token`
exists for service accounts, the CLI and tests.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time

from pydantic import BaseModel, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "mc1"


class TokenClaims(BaseModel):
    """Validated token payload."""

    sub: str
    role: str
    iat: float
    exp: float


class TokenManager:
    """Sign and verify HMAC bearer tokens.

    Parameters
    ----------
    secret:
        Shared signing secret.
    ttl_seconds:
        Lifetime of tokens issued by :meth:`generate_token`.
    """

    def __init__(self, secret: SecretStr, ttl_seconds: int = 3600) -> None:
        self._secret = secret
        self._ttl = ttl_seconds

    def _sign(self, payload: bytes) -> str:
        return hmac.new(self._secret.get_secret_value().encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def generate_token(self, sub: str, role: str, *, now: float | None = None) -> str:
        issued = time.time() if now is None else now
        payload = json.dumps({"sub": sub, "role": role, "iat": issued, "exp": issued + self._ttl}).encode("utf-8")
        encoded = base64.urlsafe_b64encode(payload).decode("ascii")
        return f"{TOKEN_PREFIX}.{encoded}.{self._sign(payload)}"

    def validate_token(self, token: str, *, now: float | None = None) -> TokenClaims:
        """Verify *token* and return its claims.

        Raises
        ------
        PermissionError
            Malformed token, bad signature or expired token.  The message
            contains ``expired`` for the last case.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("malformed token")
        try:
            payload = base64.urlsafe_b64decode(parts[1].encode("ascii"))
        except (binascii.Error, ValueError):
            raise PermissionError("malformed token payload")

        if not hmac.compare_digest(self._sign(payload), parts[2]):
            raise PermissionError("bad signature")

        try:
            claims = TokenClaims.model_validate_json(payload)
        except ValidationError:
            raise PermissionError("malformed token claims")

        current = time.time() if now is None else now
        if claims.exp <= current:
            logger.debug("Rejected expired token for subject %s", claims.sub)
            raise PermissionError("token expired")
        return claims
