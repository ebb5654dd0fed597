"""
JWT token service for the manual actions API.

Operators authenticate with a bearer token; only the ``admin`` role may
start, approve, cancel or roll back deployments.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from deployhook.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, user_id: str, role: str, email: str, expires_minutes: int | None = None) -> str:
        """
        Create a JWT token for an operator.

        Args:
            user_id: Operator's unique ID
            role: admin or viewer
            email: Operator's email, recorded as the deployment actor

        Returns:
            Encoded JWT token string
        """
        minutes = expires_minutes if expires_minutes is not None else settings.JWT_EXPIRATION_MINUTES
        expires = datetime.now(timezone.utc) + timedelta(minutes=minutes)

        payload = {
            "sub": user_id,
            "role": role,
            "email": email,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None
