"""FastAPI auth dependencies.

Learn: Routes declare who may call them with Depends():

    principal: Principal = Depends(get_current_principal)
    principal: Principal = Depends(require_roles("driver"))

The WebSocket handler can't use headers from every browser, so it passes
the token as ?token= and calls principal_from_token() itself.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException

from orderpulse.auth.jwt import TokenError, verify_token


@dataclass(frozen=True)
class Principal:
    """The authenticated caller: who (user_id) and what kind (role)."""

    user_id: int
    role: str

    @property
    def identity(self) -> str:
        return f"{self.role}:{self.user_id}"


def principal_from_token(token: str) -> Principal:
    """Raises TokenError if the token is invalid."""
    payload = verify_token(token)
    return Principal(user_id=int(payload["sub"]), role=payload["role"])


async def get_current_principal(
    authorization: Optional[str] = Header(None),
) -> Principal:
    """Extract the caller from a Bearer token (401 if missing or invalid)."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return principal_from_token(authorization[7:])
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_roles(*roles: str) -> Callable:
    """Dependency factory: 403 unless the caller has one of `roles`."""

    async def dependency(
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if principal.role not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"Requires role: {' or '.join(roles)}",
            )
        return principal

    return dependency
