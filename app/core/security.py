# core/security.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from jose import JWTError, jwt

from app.core.config import settings
from app.schemas.auth import Principal, Role

logger = logging.getLogger(__name__)


class JWTManager:
    """
    JWT handling for identities issued by the external identity provider.

    The engine never authenticates credentials itself; it only decodes the
    bearer token and trusts the subject and role it carries.
    """

    def __init__(self):
        self.secret_key = settings.jwt_secret
        self.algorithm = settings.jwt_algorithm
        self.access_token_expire = timedelta(
            minutes=settings.jwt_access_expiration_minutes
        )
        self.issuer = settings.jwt_issuer

    def create_access_token(
        self,
        principal_id: int,
        role: Role,
        custom_expiration: Optional[timedelta] = None,
    ) -> str:
        """
        Create an access token for a learner, guru or admin.

        Used by the identity provider side and by tests; the engine itself
        only consumes tokens.
        """
        current_time = datetime.now(timezone.utc)
        expire = current_time + (custom_expiration or self.access_token_expire)
        payload = {
            "sub": str(principal_id),
            "role": Role(role).value,
            "exp": int(expire.timestamp()),
            "iat": int(current_time.timestamp()),
            "iss": self.issuer,
            "type": "access",
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str, token_type: str = "access") -> Dict[str, Any]:
        """
        Verify and decode JWT token
        """
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"verify_exp": True},
            )
        except JWTError as e:
            logger.warning(f"JWT verification failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if payload.get("type") != token_type:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token type. Expected {token_type}",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return payload

    def principal_from_token(self, token: str) -> Principal:
        payload = self.verify_token(token, "access")
        try:
            return Principal(id=int(payload["sub"]), role=Role(payload["role"]))
        except (KeyError, ValueError):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token: missing subject or role",
                headers={"WWW-Authenticate": "Bearer"},
            )


jwt_manager = JWTManager()
