"""Actor identity and callback authentication.

Access tokens are issued by the identity collaborator; this service only
verifies them and turns their claims into an :class:`Actor`.
"""

import hmac
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from paysync.config import settings
from paysync.core.exceptions import AuthenticationError

STAFF_ROLES = frozenset({"staff", "admin"})
ROLES = frozenset({"client", "provider", "staff", "admin", "gateway", "system"})


@dataclass(frozen=True)
class Actor:
    """Who is asking for a change."""

    id: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def __str__(self) -> str:
        return f"{self.role}:{self.id}"


SYSTEM_ACTOR = Actor(id="system", role="system")
GATEWAY_ACTOR = Actor(id="gateway", role="gateway")


def create_access_token(
    subject: str,
    role: str,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token (tests and operator scripts)."""
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = {"sub": subject, "role": role, "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: str, token_type: str = "access") -> dict[str, Any]:
    """Verify and decode a JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise AuthenticationError(f"Token validation failed: {str(e)}")
    if payload.get("type") != token_type:
        raise AuthenticationError("Invalid token type")
    return payload


def actor_from_token(token: str) -> Actor:
    payload = verify_token(token)
    subject = payload.get("sub")
    role = payload.get("role", "client")
    if not subject or role not in ROLES:
        raise AuthenticationError("Invalid token claims")
    return Actor(id=str(subject), role=role)


def verify_callback_token(provided: str | None) -> bool:
    """Check the shared secret the gateway echoes on callbacks.

    When no secret is configured every callback is accepted.
    """
    expected = settings.gateway_webhook_secret
    if not expected:
        return True
    return bool(provided) and hmac.compare_digest(provided, expected)
