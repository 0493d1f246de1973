import logging
from dataclasses import dataclass
from datetime import timedelta

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

CANCELLATION_IMMEDIATE = "immediate"
CANCELLATION_END_OF_PERIOD = "end_of_period"


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_PREMIUM: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None

    # Subscription lifecycle
    BILLING_INTERVAL_DAYS: int = 30
    GRACE_PERIOD_DAYS: int = 7
    CANCELLATION_MODE: str = CANCELLATION_IMMEDIATE  # "immediate" | "end_of_period"

    # Admin access (X-Admin-Key header)
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


@dataclass(frozen=True)
class LifecyclePolicy:
    """Timing rules for the subscription state machine."""
    billing_interval: timedelta = timedelta(days=30)
    grace_period: timedelta = timedelta(days=7)
    cancellation_mode: str = CANCELLATION_IMMEDIATE

    @property
    def defers_cancellation(self) -> bool:
        return self.cancellation_mode == CANCELLATION_END_OF_PERIOD

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "LifecyclePolicy":
        cfg = cfg or settings
        mode = (cfg.CANCELLATION_MODE or CANCELLATION_IMMEDIATE).lower()
        if mode not in (CANCELLATION_IMMEDIATE, CANCELLATION_END_OF_PERIOD):
            raise RuntimeError(f"Unsupported CANCELLATION_MODE: {cfg.CANCELLATION_MODE}")
        return cls(
            billing_interval=timedelta(days=cfg.BILLING_INTERVAL_DAYS),
            grace_period=timedelta(days=cfg.GRACE_PERIOD_DAYS),
            cancellation_mode=mode,
        )


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("membership")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    # Surface a bad cancellation mode at startup rather than on first cancel
    LifecyclePolicy.from_settings(cfg)
    return True
