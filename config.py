import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


class Settings:
    """Environment driven configuration for the flight network service."""

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./flights.db")
    SECRET_KEY: str = os.getenv("SECRET_KEY", "a-very-secret-key-that-should-be-in-an-env-file")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Browser session
    SESSION_COOKIE: str = os.getenv("SESSION_COOKIE", "session")
    SESSION_MAX_AGE_SECONDS: int = int(os.getenv("SESSION_MAX_AGE_SECONDS", str(7 * 24 * 3600)))
    BCRYPT_ROUNDS: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Scheduler timers
    ENABLE_SCHEDULER: bool = _env_bool("ENABLE_SCHEDULER", "true")
    LIFECYCLE_INTERVAL_SECONDS: int = int(os.getenv("LIFECYCLE_INTERVAL_SECONDS", "120"))
    CLEANUP_INTERVAL_SECONDS: int = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "300"))
    RESERVATION_TIMEOUT_MINUTES: int = int(os.getenv("RESERVATION_TIMEOUT_MINUTES", "15"))

    # Flight cycle tuning
    CYCLE_SPREAD_HOURS: float = float(os.getenv("CYCLE_SPREAD_HOURS", "6"))
    CYCLE_RESET_HOURS: float = float(os.getenv("CYCLE_RESET_HOURS", "24"))
    ADVANCE_BOOKING_MONTHS: int = int(os.getenv("ADVANCE_BOOKING_MONTHS", "1"))

    # Payment authority
    CURRENCY: str = os.getenv("CURRENCY", "INR")
    PAYMENT_KEY_ID: str = os.getenv("PAYMENT_KEY_ID", "rzp_test_key")
    PAYMENT_KEY_SECRET: str = os.getenv("PAYMENT_KEY_SECRET", "payment-secret-change-me")
    PAYMENT_WEBHOOK_SECRET: str = os.getenv("PAYMENT_WEBHOOK_SECRET", "webhook-secret-change-me")

    # Mail
    SMTP_HOST: str | None = os.getenv("SMTP_HOST")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME: str | None = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD: str | None = os.getenv("SMTP_PASSWORD")
    SMTP_USE_TLS: bool = _env_bool("SMTP_USE_TLS", "true")
    MAIL_FROM: str = os.getenv("MAIL_FROM", "no-reply@saiairways.example")

    # Provisioning
    ADMIN_EMAIL: str | None = os.getenv("ADMIN_EMAIL", "admin@example.com")
    ADMIN_PASSWORD: str | None = os.getenv("ADMIN_PASSWORD")
    SEED_AIRPORTS: bool = _env_bool("SEED_AIRPORTS", "true")
    SEED_DEMO_DATA: bool = _env_bool("SEED_DEMO_DATA", "false")


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
