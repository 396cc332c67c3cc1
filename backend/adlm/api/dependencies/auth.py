"""
Authentication dependencies.

The caller's identity comes from the bearer access token; the user row is
then loaded from the database so role and disabled changes take effect
immediately rather than when the token expires.

Usage:
    @router.get("/me")
    def me(user: User = Depends(get_current_user)):
        ...

    @router.post("/admin/...")
    def admin_only(admin: User = Depends(require_admin)):
        ...
"""

import logging
from typing import Callable, Iterable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from adlm.auth.tokens import TokenConfig, TokenError, TokenExpiredError, TokenService
from adlm.config.settings import Settings
from adlm.database.session import get_db_session
from adlm.models.user import STAFF_ROLES, User, UserRole
from adlm.platform.errors import (
    AuthenticationError,
    PermissionDeniedError,
    ServiceUnavailableError,
)

logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({UserRole.ADMIN.value})


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise ServiceUnavailableError("Application settings not loaded")
    return settings


def get_token_service(settings: Settings = Depends(get_settings)) -> TokenService:
    return TokenService(TokenConfig.from_settings(settings))


def extract_bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Missing bearer token")
    return token.strip()


def get_current_user(
    request: Request,
    db: Session = Depends(get_db_session),
    tokens: TokenService = Depends(get_token_service),
) -> User:
    """
    Resolve the authenticated user.

    Raises:
        AuthenticationError: missing, invalid or expired token, unknown or disabled user
    """
    token = extract_bearer_token(request)
    try:
        payload = tokens.validate(token, "access")
    except TokenExpiredError:
        raise AuthenticationError("Access token expired", {"reason": "token_expired"})
    except TokenError:
        raise AuthenticationError("Invalid access token", {"reason": "token_invalid"})

    user = db.get(User, payload.sub)
    if user is None or user.disabled:
        logger.warning(
            "Access token for unknown or disabled user",
            extra={"user_id": payload.sub, "path": request.url.path},
        )
        raise AuthenticationError("Account unavailable", {"reason": "account_unavailable"})

    request.state.user_id = user.id
    return user


def require_roles(roles: Iterable[str]) -> Callable:
    """Dependency factory: the caller must hold one of the roles."""
    allowed = frozenset(roles)

    def _check(request: Request, user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            logger.warning(
                "Role check failed",
                extra={
                    "user_id": user.id,
                    "role": user.role,
                    "required": sorted(allowed),
                    "path": request.url.path,
                },
            )
            raise PermissionDeniedError("Insufficient role", {"required": sorted(allowed)})
        return user

    return _check


require_admin = require_roles(ADMIN_ROLES)
require_staff = require_roles(STAFF_ROLES)
