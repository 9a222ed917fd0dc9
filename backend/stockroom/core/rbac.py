"""Role-Based Access Control (RBAC) dependencies."""

from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status

from stockroom.core.permissions import Permission, can_user
from stockroom.core.security import decode_access_token
from stockroom.db.session import DbSession
from stockroom.models.user import User

__all__ = [
    "get_token_from_request",
    "get_current_user",
    "require_permission",
    "CurrentUser",
]


def get_token_from_request(request: Request) -> Optional[str]:
    """Return the raw token from the Authorization header or the access_token cookie."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        if token:
            return token
    return request.cookies.get("access_token")


def get_current_user(request: Request, db: DbSession) -> User:
    """Get the current authenticated user from the JWT token.

    Checks in order:
    1. Authorization: Bearer <token> header
    2. access_token cookie (HttpOnly)

    The user row is re-read on every request so that deactivation and
    role changes take effect without waiting for the token to expire.
    """
    token = get_token_from_request(request)
    payload = decode_access_token(token) if token else None

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    try:
        user = db.get(User, int(user_id))
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled",
        )

    return user


def require_permission(permission: Permission):
    """Dependency that rejects callers lacking ``permission`` with a 403."""

    def permission_checker(
        current_user: Annotated[User, Depends(get_current_user)]
    ) -> User:
        if not can_user(current_user, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"You do not have permission to {permission.value}.",
            )
        return current_user

    return permission_checker


CurrentUser = Annotated[User, Depends(get_current_user)]
