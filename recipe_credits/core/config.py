import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    AUTO_CREATE_SCHEMA: bool = False

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PRICE_WEEKLY: Optional[str] = None
    STRIPE_PRICE_MONTHLY: Optional[str] = None
    STRIPE_PRICE_YEARLY: Optional[str] = None

    # Identity (tokens are minted by the auth provider, verified here)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: Optional[str] = None
    # Dev/test only: trust X-User-Id as identity
    ALLOW_USER_ID_HEADER: bool = False

    # Operator access
    ADMIN_KEY: Optional[str] = None

    # Credits
    TRIAL_GRANT_CREDITS: int = 3
    MAX_DEBIT_AMOUNT: int = 10

    # Bounded retries for CAS writes
    DEBIT_MAX_ATTEMPTS: int = 5
    CREDIT_MAX_ATTEMPTS: int = 5
    STREAK_MAX_ATTEMPTS: int = 3
    # Hard cap on CAS loops, including attempts lost to committed writers
    CAS_RETRY_CEILING: int = 200

    CORS_ORIGINS: List[str] = ["http://localhost:8081", "http://localhost:19006"]

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
    log = logger or logging.getLogger("recipe_credits")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "AUTH_JWT_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
