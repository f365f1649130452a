"""JWT authentication with a shared HS256 secret.

Dashboard users are authenticated by an upstream identity service that signs
access tokens with the shared ``jwt_secret_key``. The ``sub`` claim carries
the user id every metric is scoped to.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import jwt

from subscription_analytics.config import settings


class JWTAuth:
    """JWT authentication handler."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        access_token_expire_minutes: Optional[int] = None,
    ):
        """Initialize JWT auth from settings unless overridden."""
        self.secret_key = secret_key or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm
        self.access_token_expire_minutes = access_token_expire_minutes or settings.access_token_expire_minutes

    def create_access_token(self, user_id: str, additional_claims: Optional[Dict] = None) -> str:
        """
        Create JWT access token.

        Args:
            user_id: Dashboard user id
            additional_claims: Additional JWT claims

        Returns:
            Encoded JWT token
        """
        now = datetime.now(timezone.utc)
        claims = {
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(minutes=self.access_token_expire_minutes),
            "type": "access",
        }
        if additional_claims:
            claims.update(additional_claims)

        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify_access_token(self, token: str) -> Dict:
        """
        Verify and decode an access token.

        Args:
            token: JWT token string

        Returns:
            Decoded token claims

        Raises:
            jwt.ExpiredSignatureError: If token is expired
            jwt.InvalidTokenError: If token is invalid, not an access token or has no subject
        """
        payload = jwt.decode(
            token,
            self.secret_key,
            algorithms=[self.algorithm],
            options={"require": ["sub", "exp"]},
        )

        if payload.get("type", "access") != "access":
            raise jwt.InvalidTokenError("Not an access token")

        return payload


# Global JWT auth instance
jwt_auth = JWTAuth()
