"""Authentication routes."""

import logging

from fastapi import APIRouter, HTTPException, Request, Response, status

from stockroom.core.config import settings
from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser, get_token_from_request
from stockroom.core.security import blacklist_token, create_access_token, verify_password
from stockroom.db.session import DbSession
from stockroom.models.user import User
from stockroom.schemas.auth import LoginRequest, Token
from stockroom.schemas.user import UserResponse
from stockroom.services.activity_log_service import get_request_ip_address, log_activity

logger = logging.getLogger("auth")

router = APIRouter()


@router.post("/login", response_model=Token)
@limiter.limit("5/minute")
def login(request: Request, response: Response, login_request: LoginRequest, db: DbSession):
    """Authenticate user and return JWT token.

    The token is also set as an HttpOnly ``access_token`` cookie.
    """
    client_ip = get_request_ip_address(request) or "unknown"
    email = login_request.email.strip().lower()
    user = db.query(User).filter(User.email == email).first()

    if not user or not verify_password(login_request.password, user.password_hash):
        logger.warning(f"Failed login attempt for email: {email} from IP: {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if not user.is_active:
        logger.warning(f"Login attempt for inactive user: {email} (ID: {user.id}) from IP: {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is inactive",
        )

    logger.info(f"Successful login: {user.email} (ID: {user.id}, role: {user.role}) from IP: {client_ip}")
    log_activity(db, "USER_LOGIN", user.id, "User", user.id, {"email": user.email}, client_ip)
    db.commit()

    token = create_access_token(data={"sub": str(user.id), "email": user.email, "role": user.role})
    response.set_cookie(
        key="access_token",
        value=token,
        httponly=True,
        secure=not settings.debug,
        samesite="lax",
        max_age=settings.access_token_expire_minutes * 60,
    )
    return Token(access_token=token)


@router.get("/me", response_model=UserResponse)
@limiter.limit("60/minute")
def get_current_user_info(request: Request, current_user: CurrentUser):
    """Get current authenticated user info."""
    return current_user


# ===== Session Management =====

@router.post("/logout")
@limiter.limit("30/minute")
def logout(request: Request, response: Response, current_user: CurrentUser):
    """Invalidate the current JWT token (logout).

    The token's JTI goes on the blacklist, so the token can no longer be
    used even before it expires.
    """
    token = get_token_from_request(request)
    if token:
        blacklist_token(token)
    response.delete_cookie("access_token")
    logger.info(f"User logged out: {current_user.email} (ID: {current_user.id})")
    return {"message": "Logged out successfully"}
