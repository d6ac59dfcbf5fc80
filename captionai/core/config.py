import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_IDENTITIES: bool = False  # log raw emails instead of masked ones

    # Generation (Groq)
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.3-70b-versatile"
    GENERATION_TIMEOUT_SECONDS: float = 30.0

    # Metering
    FREE_GENERATION_LIMIT: int = 3
    VIP_EMAILS: str = ""  # comma-separated
    VIP_EMAILS_FILE: Optional[str] = None  # one email per line
    VERIFIER_TIMEOUT_SECONDS: float = 5.0
    SUBSCRIPTION_VERIFY_TTL_SECONDS: int = 60  # 0 = verify on every request

    # Storage
    STORE_BACKEND: str = "memory"  # memory | database
    DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_ID: Optional[str] = None

    # App URLs
    BASE_URL: str = "http://localhost:8000"
    CORS_ALLOW_ORIGINS: str = "*"  # comma-separated

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
    log = logger or logging.getLogger("captionai")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "GROQ_API_KEY",
        "STRIPE_SECRET_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.FREE_GENERATION_LIMIT < 0:
        message = "FREE_GENERATION_LIMIT must be >= 0"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
