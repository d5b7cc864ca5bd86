import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Storage resilience
    STORAGE_RETRY_ATTEMPTS: int = 3
    STORAGE_RETRY_MIN_WAIT_SECONDS: float = 0.05
    STORAGE_RETRY_MAX_WAIT_SECONDS: float = 1.0
    STORAGE_POOL_TIMEOUT_SECONDS: int = 10
    STORAGE_STATEMENT_TIMEOUT_MS: int = 5000  # PostgreSQL only

    # Entitlements
    NEAR_LIMIT_THRESHOLD: float = 80.0  # percent of limit
    DEFAULT_SOURCE: str = "system"

    # Admin access for the internal HTTP surface
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("entitlements")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.STORAGE_RETRY_ATTEMPTS < 1:
        message = "STORAGE_RETRY_ATTEMPTS must be at least 1"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
