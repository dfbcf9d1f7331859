import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.exceptions import ConfigurationError
from app.core.security import jwt_manager
from app.schemas.auth import Principal, Role
from app.utils.razorpay_client import PaymentGateway

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Security(security),
) -> Principal:
    """
    Dependency that requires a valid Bearer token and returns the caller.
    Raises 401 Unauthorized if the token is missing or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return jwt_manager.principal_from_token(credentials.credentials)


def require_roles(*roles: Role):
    """
    Dependency factory restricting an endpoint to the given roles.
    Usage: Depends(require_roles(Role.ADMIN))
    """

    async def role_checker(
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if principal.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(r.value for r in roles)}",
            )
        return principal

    return role_checker


get_current_admin = require_roles(Role.ADMIN)


def get_payment_gateway(request: Request) -> PaymentGateway:
    """
    The gateway adapter built once at startup and stored on app state.
    Tests override this dependency with an in-memory fake.
    """
    gateway: Optional[PaymentGateway] = getattr(
        request.app.state, "payment_gateway", None
    )
    if gateway is None:
        logger.error("Payment gateway requested but not initialized")
        raise ConfigurationError("Payment gateway is not configured")
    return gateway
