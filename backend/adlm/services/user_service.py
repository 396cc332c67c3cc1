"""
Accounts: signup, credential checks, password changes and admin lockout.

Every change that must log the user out everywhere (password change,
disable) bumps refresh_version, which invalidates all refresh tokens.
"""

import logging
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adlm.auth.passwords import hash_password, password_problem, verify_password
from adlm.models.user import User, UserRole
from adlm.platform.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 50


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def user_to_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "whatsapp": user.whatsapp,
        "role": user.role,
        "disabled": user.disabled,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


class UserService:
    """Account operations bound to one session."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def find_by_identifier(self, identifier: str) -> Optional[User]:
        """Look up by email when the identifier has an @, by username otherwise."""
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        if "@" in identifier:
            condition = User.email == normalize_email(identifier)
        else:
            condition = func.lower(User.username) == identifier.lower()
        return self.db.execute(select(User).where(condition)).scalar_one_or_none()

    def signup(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        whatsapp: Optional[str] = None,
        username: Optional[str] = None,
    ) -> User:
        """
        Create an account. Signup grants no entitlements.

        Raises:
            ValidationError: weak password
            ConflictError: email or username already taken
        """
        email = normalize_email(email)
        problem = password_problem(password)
        if problem:
            raise ValidationError(problem, {"field": "password"})
        username = (username or "").strip() or None

        conditions = [User.email == email]
        if username:
            conditions.append(func.lower(User.username) == username.lower())
        taken = self.db.execute(select(User.id).where(or_(*conditions))).first()
        if taken is not None:
            raise ConflictError("Email or username already in use")

        user = User(
            email=email,
            username=username,
            password_hash=hash_password(password),
            first_name=(first_name or "").strip() or None,
            last_name=(last_name or "").strip() or None,
            whatsapp=(whatsapp or "").strip() or None,
            role=UserRole.USER.value,
        )
        self.db.add(user)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Email or username already in use")
        logger.info("User signed up", extra={"user_id": user.id})
        return user

    def authenticate(self, identifier: str, password: str) -> User:
        """
        Raises:
            AuthenticationError: unknown identifier or wrong password
            PermissionDeniedError: account disabled
        """
        user = self.find_by_identifier(identifier)
        if user is None or not verify_password(password, user.password_hash):
            logger.info("Login failed", extra={"reason": "bad_credentials"})
            raise AuthenticationError("Invalid credentials", {"reason": "bad_credentials"})
        if user.disabled:
            logger.warning("Login for disabled account", extra={"user_id": user.id})
            raise PermissionDeniedError("Account disabled", {"reason": "account_disabled"})
        return user

    def change_password(self, user: User, current_password: str, new_password: str) -> None:
        """Replace the password and invalidate every refresh token. The caller commits."""
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect", {"reason": "bad_credentials"})
        problem = password_problem(new_password)
        if problem:
            raise ValidationError(problem, {"field": "new_password"})
        user.password_hash = hash_password(new_password)
        user.bump_refresh_version()
        logger.info("Password changed", extra={"user_id": user.id})

    def search(self, query: Optional[str] = None, limit: int = SEARCH_LIMIT) -> list[User]:
        stmt = select(User).order_by(User.created_at.desc()).limit(limit)
        query = (query or "").strip().lower()
        if query:
            pattern = f"%{query}%"
            stmt = stmt.where(or_(
                func.lower(User.email).like(pattern),
                func.lower(User.username).like(pattern),
                func.lower(User.first_name).like(pattern),
                func.lower(User.last_name).like(pattern),
            ))
        return list(self.db.execute(stmt).scalars())

    def set_disabled(self, user_id: str, disabled: bool) -> User:
        """Lock or unlock an account. Disabling logs the user out. The caller commits."""
        user = self.get(user_id)
        user.disabled = disabled
        if disabled:
            user.bump_refresh_version()
        logger.info(
            "User disabled" if disabled else "User enabled",
            extra={"user_id": user.id, "refresh_version": user.refresh_version},
        )
        return user
