"""
Authentication routes.

Handles:
- POST /auth/signup:   create an account, returns access + refresh tokens
- POST /auth/login:    email or username login; desktop plugin login also
                       activates a device seat and returns a license token
- POST /auth/refresh:  rotate tokens; dies when refresh_version moved
- POST /auth/logout:   stateless, 204
- POST /auth/password: change password, invalidates every refresh token
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from adlm.api.dependencies.auth import get_current_user, get_token_service
from adlm.auth.tokens import TokenError, TokenExpiredError, TokenService
from adlm.database.session import get_db_session
from adlm.entitlements.seats import DeviceSeatEnforcer
from adlm.middleware.rate_limit import rate_limit_dependency
from adlm.models.user import User
from adlm.platform.audit import AuditAction, record_audit_event
from adlm.platform.errors import AuthenticationError, ValidationError
from adlm.services.user_service import UserService, user_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class SignupBody(BaseModel):
    email: EmailStr = Field(..., description="Login email")
    password: str = Field(..., description="At least 8 characters")
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    whatsapp: Optional[str] = Field(None, max_length=40)
    username: Optional[str] = Field(None, max_length=64)


class LoginBody(BaseModel):
    identifier: str = Field(..., min_length=1, description="Email or username")
    password: str = Field(..., min_length=1)
    product_key: Optional[str] = Field(None, description="Desktop plugin login: product to activate")
    device_fingerprint: Optional[str] = Field(None, description="Required with product_key")
    device_name: Optional[str] = Field(None, max_length=255)


class RefreshBody(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class PasswordBody(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., description="At least 8 characters")


def session_tokens(tokens: TokenService, user: User) -> dict[str, Any]:
    access = tokens.issue_access_token(user)
    refresh = tokens.issue_refresh_token(user)
    return {
        "access_token": access.token,
        "access_token_expires_at": access.expires_at.isoformat(),
        "refresh_token": refresh.token,
        "token_type": "bearer",
    }


@router.post(
    "/signup",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_dependency("auth_signup"))],
)
def signup(
    request: Request,
    body: SignupBody,
    db: Session = Depends(get_db_session),
    tokens: TokenService = Depends(get_token_service),
) -> dict:
    users = UserService(db)
    user = users.signup(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        whatsapp=body.whatsapp,
        username=body.username,
    )
    record_audit_event(
        db,
        request,
        AuditAction.AUTH_SIGNUP,
        actor_id=user.id,
        resource_type="user",
        resource_id=user.id,
        metadata={"email": user.email},
    )
    db.commit()
    return {**session_tokens(tokens, user), "user": user_to_dict(user)}


@router.post("/login", dependencies=[Depends(rate_limit_dependency("auth_login"))])
def login(
    body: LoginBody,
    db: Session = Depends(get_db_session),
    tokens: TokenService = Depends(get_token_service),
) -> dict:
    user = UserService(db).authenticate(body.identifier, body.password)
    response: dict[str, Any] = {**session_tokens(tokens, user), "user": user_to_dict(user)}

    if body.product_key:
        if not (body.device_fingerprint or "").strip():
            raise ValidationError(
                "device_fingerprint is required for plugin login",
                {"field": "device_fingerprint"},
            )
        activation = DeviceSeatEnforcer(db).activate(
            user,
            body.product_key,
            body.device_fingerprint,
            name=body.device_name,
        )
        license_token = tokens.issue_license_token(user)
        response["activation"] = activation.to_dict()
        response["license_token"] = license_token.token
        response["license_expires_at"] = license_token.expires_at.isoformat()

    logger.info("User logged in", extra={"user_id": user.id, "plugin": bool(body.product_key)})
    return response


@router.post("/refresh", dependencies=[Depends(rate_limit_dependency("auth_refresh"))])
def refresh(
    body: RefreshBody,
    db: Session = Depends(get_db_session),
    tokens: TokenService = Depends(get_token_service),
) -> dict:
    try:
        payload = tokens.validate(body.refresh_token, "refresh")
    except TokenExpiredError:
        raise AuthenticationError("Refresh token expired", {"reason": "token_expired"})
    except TokenError:
        raise AuthenticationError("Invalid refresh token", {"reason": "token_invalid"})

    user = db.get(User, payload.sub)
    if user is None or user.disabled:
        raise AuthenticationError("Account unavailable", {"reason": "account_unavailable"})
    if payload.v != user.refresh_version:
        logger.info(
            "Refresh token revoked",
            extra={"user_id": user.id, "token_version": payload.v, "current_version": user.refresh_version},
        )
        raise AuthenticationError("Refresh token revoked", {"reason": "token_revoked"})

    return session_tokens(tokens, user)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/password")
def change_password(
    request: Request,
    body: PasswordBody,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session),
    tokens: TokenService = Depends(get_token_service),
) -> dict:
    """Change password; other sessions lose their refresh tokens."""
    UserService(db).change_password(user, body.current_password, body.new_password)
    record_audit_event(
        db,
        request,
        AuditAction.AUTH_PASSWORD_CHANGE,
        actor_id=user.id,
        resource_type="user",
        resource_id=user.id,
    )
    db.commit()
    return {"ok": True, **session_tokens(tokens, user)}
