"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract
and validate the current user from the request.

Token lookup order:
1. Authorization: Bearer <jwt>
2. auth-token cookie (set by the web client on login)
"""

from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException

from kephale.auth.jwt import TokenError, verify_token

ADMIN_ROLES = frozenset({"ADMIN", "SUPER_ADMIN"})


class CurrentUser:
    """The authenticated user making the request."""

    def __init__(self, user_id: str, email: str = "", role: str = "USER"):
        self.user_id = user_id
        self.email = email
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @classmethod
    def from_token(cls, token: str) -> "CurrentUser":
        """Build an identity from a raw JWT. Raises TokenError."""
        payload = verify_token(token)
        return cls(
            user_id=str(payload["sub"]),
            email=payload.get("email") or "",
            role=payload.get("role") or "USER",
        )


def _extract_token(
    authorization: Optional[str], auth_token: Optional[str]
) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return auth_token or None


async def get_current_user(
    authorization: Optional[str] = Header(None),
    auth_token: Optional[str] = Cookie(None, alias="auth-token"),
) -> CurrentUser:
    """Resolve the current user (required — 401 if missing or invalid)."""
    token = _extract_token(authorization, auth_token)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return CurrentUser.from_token(token)
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin(
    user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """Require ADMIN or SUPER_ADMIN role (403 otherwise)."""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Administrator role required")
    return user
