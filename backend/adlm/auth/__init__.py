"""Authentication: password hashing and signed tokens."""

from adlm.auth.passwords import hash_password, verify_password
from adlm.auth.tokens import (
    TokenConfig,
    TokenError,
    TokenExpiredError,
    TokenPayload,
    TokenService,
    TokenValidationError,
)

__all__ = [
    "hash_password",
    "verify_password",
    "TokenConfig",
    "TokenError",
    "TokenExpiredError",
    "TokenPayload",
    "TokenService",
    "TokenValidationError",
]
