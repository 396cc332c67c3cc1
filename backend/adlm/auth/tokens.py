"""
JWT tokens for ADLM Studio.

Three token types share one HMAC secret and are told apart by the `typ`
claim:
- access:  ~15 minutes, sent as a bearer token on every API call
- refresh: ~30 days, carries `v` = user.refresh_version; bumping the user's
           refresh_version invalidates every refresh token at once
- license: up to 15 days, embeds {product_key: {status, exp}} so a desktop
           client can verify entitlements offline
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Literal, Optional

import jwt
from pydantic import BaseModel

from adlm.config.settings import Settings
from adlm.models.base import utcnow
from adlm.models.user import User

logger = logging.getLogger(__name__)

TokenType = Literal["access", "refresh", "license"]


class TokenConfig(BaseModel):
    """Configuration for token generation."""
    jwt_secret: str
    algorithm: str = "HS256"
    issuer: str = "adlm-studio"
    access_lifetime_minutes: int = 15
    refresh_lifetime_days: int = 30
    license_lifetime_days: int = 15

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        return cls(
            jwt_secret=settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            access_lifetime_minutes=settings.access_token_ttl_minutes,
            refresh_lifetime_days=settings.refresh_token_ttl_days,
            license_lifetime_days=settings.license_token_ttl_days,
        )


class TokenPayload(BaseModel):
    """Decoded token payload."""
    sub: str
    typ: str
    iss: str
    iat: int
    exp: int
    jti: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    v: Optional[int] = None
    entitlements: Optional[dict[str, dict[str, Any]]] = None


class IssuedToken(BaseModel):
    token: str
    expires_at: datetime


class TokenError(Exception):
    """Base exception for token errors."""
    pass


class TokenExpiredError(TokenError):
    """Token has expired."""
    pass


class TokenValidationError(TokenError):
    """Token is malformed, forged or of the wrong type."""
    pass


def license_claims(user: User) -> dict[str, dict[str, Any]]:
    """Compact {product_key: {status, exp}} map; exp is epoch seconds or None."""
    claims = {}
    for product_key, entitlement in sorted(user.entitlements.items()):
        claims[product_key] = {
            "status": entitlement.status.value,
            "exp": int(entitlement.expires_at.timestamp()) if entitlement.expires_at else None,
        }
    return claims


class TokenService:
    """Issues and validates access, refresh and license tokens."""

    def __init__(self, config: TokenConfig):
        self.config = config

    def _issue(
        self,
        user: User,
        typ: TokenType,
        lifetime: timedelta,
        claims: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> IssuedToken:
        now = now or utcnow()
        exp = now + lifetime
        payload = {
            "sub": user.id,
            "typ": typ,
            "iss": self.config.issuer,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
            "jti": str(uuid.uuid4()),
            **claims,
        }
        token = jwt.encode(payload, self.config.jwt_secret, algorithm=self.config.algorithm)
        return IssuedToken(token=token, expires_at=exp)

    def issue_access_token(self, user: User, now: Optional[datetime] = None) -> IssuedToken:
        return self._issue(
            user,
            "access",
            timedelta(minutes=self.config.access_lifetime_minutes),
            {"email": user.email, "role": user.role},
            now,
        )

    def issue_refresh_token(self, user: User, now: Optional[datetime] = None) -> IssuedToken:
        return self._issue(
            user,
            "refresh",
            timedelta(days=self.config.refresh_lifetime_days),
            {"v": user.refresh_version},
            now,
        )

    def issue_license_token(self, user: User, now: Optional[datetime] = None) -> IssuedToken:
        issued = self._issue(
            user,
            "license",
            timedelta(days=self.config.license_lifetime_days),
            {"email": user.email, "entitlements": license_claims(user)},
            now,
        )
        logger.info(
            "Issued license token",
            extra={
                "user_id": user.id,
                "products": sorted(user.entitlements.keys()),
                "expires_at": issued.expires_at.isoformat(),
            }
        )
        return issued

    def validate(self, token: str, expected_type: TokenType) -> TokenPayload:
        """
        Validate and decode a token of the given type.

        Raises:
            TokenExpiredError: If token has expired
            TokenValidationError: If token is invalid or of another type
        """
        try:
            payload = jwt.decode(
                token,
                self.config.jwt_secret,
                algorithms=[self.config.algorithm],
                issuer=self.config.issuer,
            )
            token_payload = TokenPayload(**payload)
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise TokenValidationError(f"Invalid token: {str(e)}")
        except ValueError as e:
            raise TokenValidationError(f"Invalid token payload: {str(e)}")

        if token_payload.typ != expected_type:
            raise TokenValidationError(f"Expected {expected_type} token, got {token_payload.typ}")
        return token_payload
