"""
Application settings loaded from environment variables.
"""

import logging
from typing import List

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # ── Session tokens ──────────────────────────────────────────────────
    jwt_secret: str = Field(..., min_length=1)          # HMAC secret, required
    jwt_expiry_seconds: int = 86400                     # 24 hours

    # ── Password hashing ────────────────────────────────────────────────
    bcrypt_rounds: int = Field(12, ge=4, le=31)
    password_hash_workers: int = Field(4, ge=1)

    # ── Delegated tokens ────────────────────────────────────────────────
    token_encryption_key: str = ""                       # Fernet key for encrypting OAuth tokens at rest
    sweeper_interval_seconds: float = Field(300.0, gt=0)

    # ── Database ─────────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./data/credentials.db"
    storage_timeout_seconds: float = Field(10.0, gt=0)
    storage_max_retries: int = Field(2, ge=0)
    storage_backoff_seconds: float = 0.1
    storage_backoff_multiplier: float = 2.0

    # ── Server ───────────────────────────────────────────────────────────
    port: int = 3001
    host: str = "0.0.0.0"
    debug: bool = False
    cors_origins: List[str] = ["*"]

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }


def load_settings() -> Settings:
    """
    Load settings from the environment.

    A missing ``JWT_SECRET`` (or any other invalid value) is a fatal
    misconfiguration: log it and exit instead of serving requests.
    """
    try:
        return Settings()
    except ValidationError as exc:
        logger.critical("Invalid configuration, refusing to start: %s", exc)
        raise SystemExit(1) from exc
