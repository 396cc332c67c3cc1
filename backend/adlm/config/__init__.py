"""Configuration module for the ADLM backend."""

from adlm.config.settings import Settings, normalize_database_url

__all__ = [
    "Settings",
    "normalize_database_url",
]
