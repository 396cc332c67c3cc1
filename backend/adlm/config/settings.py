"""
Application settings.

Values come from environment variables through Settings.from_env(). The
resulting object is stored on app.state and handed to whatever needs it;
nothing reads it from a module-level global.

Environment variables:
- DATABASE_URL:               SQLAlchemy URL (postgres:// is normalised)
- JWT_SECRET:                 HMAC secret for access, refresh and license tokens (required)
- JWT_ALGORITHM:              default "HS256"
- ACCESS_TOKEN_TTL_MINUTES:   default 15
- REFRESH_TOKEN_TTL_DAYS:     default 30
- LICENSE_TOKEN_TTL_DAYS:     default 15
- PAYSTACK_SECRET_KEY:        enables the Paystack checkout; manual approval otherwise
- PAYSTACK_BASE_URL:          default "https://api.paystack.co"
- PAYSTACK_CALLBACK_URL:      redirect after Paystack checkout
- FX_NGN_PER_USD:             conversion for products without a USD price (default 1500)
- DEFAULT_TRAINING_CAPACITY:  default 14
- GRANTS_REACTIVATE_DISABLED: whether a paid grant lifts an admin disable (default true)
- LOG_LEVEL:                  default "INFO"
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

from adlm.models.training import DEFAULT_TRAINING_CAPACITY


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def normalize_database_url(database_url: str) -> str:
    """Handle the postgres:// URL form (SQLAlchemy requires postgresql://)."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


class Settings(BaseModel):
    """Runtime configuration."""
    database_url: Optional[str] = None
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "adlm-studio"
    access_token_ttl_minutes: int = Field(default=15, ge=1)
    refresh_token_ttl_days: int = Field(default=30, ge=1)
    license_token_ttl_days: int = Field(default=15, ge=1)
    paystack_secret_key: Optional[str] = None
    paystack_base_url: str = "https://api.paystack.co"
    paystack_callback_url: Optional[str] = None
    fx_ngn_per_usd: float = Field(default=1500.0, gt=0)
    default_training_capacity: int = Field(default=DEFAULT_TRAINING_CAPACITY, ge=1)
    grants_reactivate_disabled: bool = True
    log_level: str = "INFO"

    @property
    def paystack_enabled(self) -> bool:
        return bool(self.paystack_secret_key)

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Load settings from the environment.

        Raises:
            ValueError: If JWT_SECRET is not set
        """
        jwt_secret = os.getenv("JWT_SECRET")
        if not jwt_secret:
            raise ValueError("JWT_SECRET environment variable is required")

        database_url = os.getenv("DATABASE_URL")
        if database_url:
            database_url = normalize_database_url(database_url)

        return cls(
            database_url=database_url,
            jwt_secret=jwt_secret,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            access_token_ttl_minutes=int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", "15")),
            refresh_token_ttl_days=int(os.getenv("REFRESH_TOKEN_TTL_DAYS", "30")),
            license_token_ttl_days=int(os.getenv("LICENSE_TOKEN_TTL_DAYS", "15")),
            paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY") or None,
            paystack_base_url=os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co"),
            paystack_callback_url=os.getenv("PAYSTACK_CALLBACK_URL") or None,
            fx_ngn_per_usd=float(os.getenv("FX_NGN_PER_USD", "1500")),
            default_training_capacity=int(
                os.getenv("DEFAULT_TRAINING_CAPACITY", str(DEFAULT_TRAINING_CAPACITY))
            ),
            grants_reactivate_disabled=_env_bool("GRANTS_REACTIVATE_DISABLED", "true"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
