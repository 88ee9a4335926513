"""JWT creation and verification.

Learn: Tokens carry two claims this service cares about:
- sub:  the user id (stringified integer)
- role: customer | restaurant | driver | support

Issuing tokens is the account service's job. create_access_token exists
for the CLI and for tests; production traffic only ever verifies.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from orderpulse.config import settings

ROLES = ("customer", "restaurant", "driver", "support")


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def create_access_token(
    user_id: int,
    role: str,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a signed access token for a user and role."""
    if role not in ROLES:
        raise TokenError(f"Unknown role '{role}'")
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": "access",
        "exp": now + timedelta(
            minutes=expires_minutes or settings.access_token_expire_minutes
        ),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")

    if payload.get("role") not in ROLES:
        raise TokenError("Token has no valid role claim")
    try:
        int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise TokenError("Token subject is not a user id")
    return payload
