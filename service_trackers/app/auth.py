"""
Bearer-token authentication for the Tracker Studio API.

The ``sub`` claim of a verified JWT is the calling principal. Everything
downstream of this module trusts that id and nothing else.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request
from jose import JWTError, jwt

from shared.errors import AuthenticationError
from shared.logging import get_logger, set_principal_context


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""

    principal_id: str
    claims: Dict[str, Any]


class TokenAuthenticator:
    """Validates shared-secret JWTs from the Authorization header."""

    def __init__(self, secret: str, algorithm: str = "HS256", audience: Optional[str] = None):
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience
        self.logger = get_logger("trackers.auth")

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except JWTError as exc:
            raise AuthenticationError("JWT validation failed", details={"error": str(exc)}) from exc

    async def authenticate(self, request: Request) -> Principal:
        authorization = request.headers.get("Authorization")
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("Missing or invalid Authorization header")

        token = authorization[7:].strip()
        if not token:
            raise AuthenticationError("Authorization header contained empty bearer token")

        claims = self.decode(token)
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError("JWT missing subject claim")

        set_principal_context(subject)
        request.state.principal_id = subject
        return Principal(principal_id=subject, claims=claims)
