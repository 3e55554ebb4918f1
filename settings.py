import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime configuration, read once from the environment (and .env)."""

    def __init__(
        self,
        jwt_secret: str = "dev_secret_change_me",
        jwt_expires_days: int = 7,
        stripe_secret_key: Optional[str] = None,
        stripe_webhook_secret: Optional[str] = None,
        currency: str = "usd",
        payments_test_mode: bool = False,
        sse_ping_seconds: float = 25.0,
        log_level: str = "INFO",
    ):
        self.jwt_secret = jwt_secret
        self.jwt_expires_days = jwt_expires_days
        self.stripe_secret_key = stripe_secret_key or None
        self.stripe_webhook_secret = stripe_webhook_secret or None
        self.currency = currency.lower()
        self.payments_test_mode = payments_test_mode
        self.sse_ping_seconds = sse_ping_seconds
        self.log_level = log_level.upper()

    @property
    def payments_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def manual_payment_allowed(self) -> bool:
        # the fallback pay endpoint trusts a client-supplied transaction id
        return self.payments_test_mode or not self.payments_configured

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            jwt_secret=os.getenv("JWT_SECRET", "dev_secret_change_me"),
            jwt_expires_days=int(os.getenv("JWT_EXPIRES_DAYS", "7")),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            currency=os.getenv("CURRENCY", "usd"),
            payments_test_mode=_env_bool("PAYMENTS_TEST_MODE"),
            sse_ping_seconds=float(os.getenv("SSE_PING_SECONDS", "25")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
