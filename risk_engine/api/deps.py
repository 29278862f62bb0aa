from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from risk_engine.core.config import settings
from risk_engine.domain.schemas import CurrentUser

# Bearer scheme so Swagger shows the lock on protected endpoints
bearer_scheme = HTTPBearer(auto_error=False)


# ── 1. IDENTITY: JWT ─────────────────────────────────────────────────
async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentUser:
    """
    Verifies that the token is valid and not expired.
    Tokens are issued by the marketplace identity service.
    """
    if credentials is None:
        raise HTTPException(
            status_code = status.HTTP_401_UNAUTHORIZED,
            detail      = "Missing bearer token",
            headers     = {"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(
            credentials.credentials, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
        )
    except JWTError:
        raise HTTPException(
            status_code = status.HTTP_401_UNAUTHORIZED,
            detail      = "Invalid, tampered or expired token",
            headers     = {"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code = status.HTTP_401_UNAUTHORIZED,
            detail      = "Token carries no user identity",
        )
    return CurrentUser(user_id=str(user_id), role=payload.get("role", "user"))


# ── 2. AUTHORIZATION: admin role ─────────────────────────────────────
async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(
            status_code = status.HTTP_403_FORBIDDEN,
            detail      = "Admin role required",
        )
    return user


# ── 3. AUTHORIZATION: booking workflow service ───────────────────────
async def require_service_or_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Booking workflow (role=service) or an admin."""
    if not (user.is_service or user.is_admin):
        raise HTTPException(
            status_code = status.HTTP_403_FORBIDDEN,
            detail      = "Service or admin role required",
        )
    return user
