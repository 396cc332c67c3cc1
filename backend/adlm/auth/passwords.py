"""
Password hashing with bcrypt.

Hashes are stored with a "bcrypt:" version prefix so the scheme can be
migrated later. bcrypt only looks at the first 72 bytes of a password, so
longer passwords are rejected at signup rather than silently truncated.
"""

import logging
import os
from typing import Optional

import bcrypt

logger = logging.getLogger(__name__)

HASH_VERSION_BCRYPT = "bcrypt:"
MAX_PASSWORD_BYTES = 72
MIN_PASSWORD_LENGTH = 8


def _rounds() -> int:
    """Cost factor; BCRYPT_ROUNDS lowers it for tests (minimum 4)."""
    return max(4, int(os.getenv("BCRYPT_ROUNDS", "12")))


def password_problem(password: str) -> Optional[str]:
    """Return why a new password is unacceptable, or None."""
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must be at most {MAX_PASSWORD_BYTES} bytes"
    return None


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=_rounds()))
    return f"{HASH_VERSION_BCRYPT}{hashed.decode('utf-8')}"


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against a stored hash. Unknown schemes never match."""
    if not password or not password_hash or not password_hash.startswith(HASH_VERSION_BCRYPT):
        return False
    stored_hash = password_hash[len(HASH_VERSION_BCRYPT):].encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash)
    except (ValueError, TypeError) as e:
        logger.error("bcrypt verification failed", extra={"error": str(e)})
        return False
