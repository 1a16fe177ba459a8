"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _str_to_tuple(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if not value:
        return default
    items = tuple(part.strip().lower() for part in value.split(",") if part.strip())
    return items or default


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    # SQLite dev fallback stored under /db/app.db to keep repo tidy
    fallback_path = BASE_DIR / "db" / "app.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Storefront")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")
    STORE_DISPLAY_NAME: Final[str] = os.getenv("STORE_DISPLAY_NAME", "Jivah Collections")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    # Flask run configuration (used by run.py)
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Bearer tokens
    TOKEN_SALT: Final[str] = os.getenv("TOKEN_SALT", "storefront-access-token")
    TOKEN_MAX_AGE_SECONDS: Final[int] = int(os.getenv("TOKEN_MAX_AGE_SECONDS", str(60 * 60 * 24)))

    # Payment provider (Paypack cash-in)
    PAYPACK_BASE_URL: Final[str] = os.getenv("PAYPACK_BASE_URL", "https://payments.paypack.rw/api")
    PAYPACK_CLIENT_ID: Final[str] = os.getenv("PAYPACK_CLIENT_ID", "")
    PAYPACK_CLIENT_SECRET: Final[str] = os.getenv("PAYPACK_CLIENT_SECRET", "")
    PAYPACK_ENVIRONMENT: Final[str] = os.getenv("PAYPACK_ENVIRONMENT", "development")
    PAYMENT_HTTP_TIMEOUT: Final[float] = float(os.getenv("PAYMENT_HTTP_TIMEOUT", "30"))
    PAYMENT_TOKEN_REFRESH_SKEW_SECONDS: Final[int] = int(os.getenv("PAYMENT_TOKEN_REFRESH_SKEW_SECONDS", "60"))
    PAYMENT_WEBHOOK_SECRET: Final[str] = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
    PAYMENT_SUCCESS_STATUSES: Final[tuple[str, ...]] = _str_to_tuple(
        os.getenv("PAYMENT_SUCCESS_STATUSES"), default=("success",)
    )
    ORDER_PAYMENT_METHOD: Final[str] = os.getenv("ORDER_PAYMENT_METHOD", "PAYPACK")

    # Notifications
    NOTIFICATIONS_DISPATCH_INLINE: Final[bool] = _str_to_bool(
        os.getenv("NOTIFICATIONS_DISPATCH_INLINE"), default=True
    )
    NOTIFICATION_DISPATCH_BATCH: Final[int] = int(os.getenv("NOTIFICATION_DISPATCH_BATCH", "50"))

    # Pagination
    DEFAULT_PAGE_SIZE: Final[int] = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    MAX_PAGE_SIZE: Final[int] = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")

    DEFAULT_TIMEZONE: Final[str] = os.getenv("DEFAULT_TIMEZONE", "UTC")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["TOKEN_SALT"] = cls.TOKEN_SALT
        app.config["TOKEN_MAX_AGE_SECONDS"] = cls.TOKEN_MAX_AGE_SECONDS
        app.config["PAYMENT_WEBHOOK_SECRET"] = cls.PAYMENT_WEBHOOK_SECRET
        app.config["NOTIFICATIONS_DISPATCH_INLINE"] = cls.NOTIFICATIONS_DISPATCH_INLINE
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
