"""Bearer-token authentication for the gateway."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import jwt

logger = logging.getLogger(__name__)

ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"


class AuthError(Exception):
    """Missing, malformed or invalid bearer credential."""
    pass


@dataclass(frozen=True)
class AuthUser:
    id: str
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def bearer_token(authorization: Optional[str]) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        raise AuthError("Authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Authentication required")
    return token.strip()


class JwtAuthenticator:
    """Verifies HS256 access tokens carrying ``sub`` and ``role`` claims."""

    def __init__(self, secret: Optional[str], algorithms: Sequence[str] = ("HS256",)):
        self.secret = secret
        self.algorithms = list(algorithms)
        if not secret:
            logger.warning("AUTH_SECRET is not set; every authenticated request will be rejected")

    def authenticate(self, token: str) -> AuthUser:
        if not self.secret:
            raise AuthError("Authentication is not configured")
        try:
            claims = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except jwt.ExpiredSignatureError as e:
            raise AuthError("Token has expired") from e
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected token: {e}")
            raise AuthError("Invalid token") from e

        subject = claims.get("sub") or claims.get("id")
        if not subject:
            raise AuthError("Invalid token")
        return AuthUser(id=str(subject), role=str(claims.get("role") or ROLE_USER).upper())

    def issue(self, user_id: str, role: str = ROLE_USER, **claims) -> str:
        """Sign a token; used by operators and tests."""
        if not self.secret:
            raise AuthError("Authentication is not configured")
        payload = {"sub": user_id, "role": role, **claims}
        return jwt.encode(payload, self.secret, algorithm=self.algorithms[0])
