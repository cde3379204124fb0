import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Storage ---
    DATABASE_URL: str = "sqlite:///./lotpass.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # --- Secrets ---
    CHECKIN_SIGNING_SECRET: str = "dev_secret_change_me"
    PAYMENT_WEBHOOK_SECRET: str = "dev_webhook_secret_change_me"

    # --- Payment processor ---
    PROCESSOR_URL: str = "http://127.0.0.1:9000"
    PROCESSOR_API_KEY: str = ""
    PROCESSOR_TIMEOUT_SECONDS: float = 5.0
    CURRENCY: str = "usd"

    # --- Registration lifecycle ---
    HOLD_MINUTES: int = 15
    SWEEP_INTERVAL_MINUTES: int = 5
    MAX_WRITE_RETRIES: int = 5

    # --- Scan gate ---
    SCAN_RATE_CAPACITY: int = 10
    SCAN_RATE_PER_MINUTE: int = 10
    IDEMPOTENCY_TTL_SECONDS: int = 300
    WEBHOOK_REPLAY_TTL_SECONDS: int = 60 * 60 * 24
    WEBHOOK_CLAIM_TTL_SECONDS: int = 60

    # --- Confirmation email ---
    SMTP_SERVER: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    FROM_EMAIL: str = "noreply@lotpass.local"
    FROM_NAME: str = "Lotpass"
    SEND_EMAILS: bool = False
    EMAIL_TIMEOUT: int = 30

    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
