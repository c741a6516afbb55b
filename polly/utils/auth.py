from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
import hmac
import uuid
import jwt

from polly.config.settings import settings


class AuthUtils:
    """Bearer credential helpers: user JWTs and the shared service key"""

    @staticmethod
    def generate_access_token(
        user_id: str, email: Optional[str] = None, expires_minutes: Optional[int] = None
    ) -> str:
        """Generate JWT access token with user information"""
        now = datetime.now(timezone.utc)
        expire = now + timedelta(
            minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

        payload = {
            "sub": str(user_id),  # Subject (user ID)
            "email": email,
            "iat": now,  # Issued at
            "exp": expire,  # Expiration
            "jti": str(uuid.uuid4()),  # JWT ID for uniqueness
        }

        return jwt.encode(
            payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM
        )

    @staticmethod
    def verify_access_token(token: str) -> Optional[Dict[str, Any]]:
        """Verify and decode access token"""
        try:
            payload = jwt.decode(
                token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
            )

            if not payload.get("sub"):
                return None

            return payload
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None

    @staticmethod
    def is_service_token(token: Optional[str]) -> bool:
        """Constant-time comparison against SERVICE_ROLE_KEY"""
        if not token or not settings.SERVICE_ROLE_KEY:
            return False
        return hmac.compare_digest(
            token.encode("utf-8"), settings.SERVICE_ROLE_KEY.encode("utf-8")
        )

    @staticmethod
    def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
        """Extract the token from an `Authorization: Bearer <token>` header"""
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()
