"""
Authentication and authorization utilities for the storefront service.

Validates JWT bearer tokens issued by the identity service. The signing key
and algorithm come from the application settings.
"""
import logging
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"

# Security scheme for JWT bearer tokens
security = HTTPBearer()


class CurrentUser(BaseModel):
    """Current authenticated user information."""
    id: int
    email: str
    role: str


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Args:
        request: Incoming request, used to reach the app settings
        credentials: HTTP Authorization credentials (injected)

    Returns:
        Current authenticated user information

    Raises:
        HTTPException: 401 if token is invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    settings = request.app.state.settings

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        user_id_str = payload.get("sub")
        email = payload.get("email")
        role = payload.get("role")

        if user_id_str is None or email is None or role is None:
            raise credentials_exception

        return CurrentUser(id=int(user_id_str), email=email, role=role)
    except (JWTError, ValueError) as e:
        logger.error(f"JWT validation error: {e}")
        raise credentials_exception


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Raises:
        HTTPException: 403 if user is not an admin
    """
    if current_user.role != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user
