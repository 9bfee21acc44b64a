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


def _csv_tuple(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    items = [item.strip().lower() for item in (value or "").split(",") if item.strip()]
    return tuple(items) or default


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

    fallback_path = BASE_DIR / "db" / "app.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "BoxOffice")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Checkout & pricing
    DEFAULT_CURRENCY: Final[str] = os.getenv("DEFAULT_CURRENCY", "usd")
    SERVICE_FEE_RATE: Final[float] = float(os.getenv("SERVICE_FEE_RATE", "0.10"))
    MIN_CHARGE_CENTS: Final[int] = int(os.getenv("MIN_CHARGE_CENTS", "50"))
    HOLD_MINUTES: Final[int] = int(os.getenv("HOLD_MINUTES", "10"))
    DEFAULT_COMMISSION_RATE: Final[float] = float(os.getenv("DEFAULT_COMMISSION_RATE", "10"))

    # Stripe
    STRIPE_WEBHOOK_SECRET: Final[str] = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_API_TIMEOUT: Final[int] = int(os.getenv("STRIPE_API_TIMEOUT", "30"))

    # White-label / multi-tenant routing
    ROOT_DOMAIN: Final[str] = os.getenv("ROOT_DOMAIN", "venueviz.com").lower()
    RESERVED_SUBDOMAINS: Final[tuple[str, ...]] = _csv_tuple(
        os.getenv("RESERVED_SUBDOMAINS"), ("www", "admin", "api")
    )
    MASTER_TENANT_SLUG: Final[str] = os.getenv("MASTER_TENANT_SLUG", "master")
    THEME_CACHE_TTL_SECONDS: Final[int] = int(os.getenv("THEME_CACHE_TTL_SECONDS", "300"))

    # External integrations
    TICKETMASTER_API_KEY: Final[str] = os.getenv("TICKETMASTER_API_KEY", "")
    TICKETMASTER_API_URL: Final[str] = os.getenv(
        "TICKETMASTER_API_URL", "https://app.ticketmaster.com/discovery/v2"
    )
    EXTERNAL_API_TIMEOUT: Final[int] = int(os.getenv("EXTERNAL_API_TIMEOUT", "15"))
    EMAIL_API_KEY: Final[str] = os.getenv("EMAIL_API_KEY", "")
    EMAIL_API_URL: Final[str] = os.getenv("EMAIL_API_URL", "https://api.resend.com/emails")
    EMAIL_FROM: Final[str] = os.getenv("EMAIL_FROM", "BoxOffice <tickets@venueviz.com>")
    PUBLIC_BASE_URL: Final[str] = os.getenv("PUBLIC_BASE_URL", "http://localhost:5000")

    # Compliance
    DSR_DEADLINE_DAYS: Final[int] = int(os.getenv("DSR_DEADLINE_DAYS", "30"))

    # Promoter documents
    DOCUMENT_UPLOAD_DIR: Final[Path] = Path(
        os.getenv("DOCUMENT_UPLOAD_DIR", (BASE_DIR / "uploads" / "documents").as_posix())
    )
    DOCUMENT_ALLOWED_EXTENSIONS: Final[tuple[str, ...]] = _csv_tuple(
        os.getenv("DOCUMENT_ALLOWED_EXTENSIONS"), ("pdf", "png", "jpg", "jpeg", "doc", "docx")
    )
    MAX_CONTENT_LENGTH: Final[int] = int(os.getenv("MAX_CONTENT_LENGTH", str(10 * 1024 * 1024)))

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = _str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)

    DEFAULT_TIMEZONE: Final[str] = os.getenv("DEFAULT_TIMEZONE", "UTC")
    SUPER_ADMIN_TOKEN: Final[str] = os.getenv("SUPER_ADMIN_TOKEN", "change-me-superadmin-token")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["MAX_CONTENT_LENGTH"] = cls.MAX_CONTENT_LENGTH
        cls.DOCUMENT_UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
        app.config["DOCUMENT_UPLOAD_DIR"] = str(cls.DOCUMENT_UPLOAD_DIR)
        app.config["DOCUMENT_ALLOWED_EXTENSIONS"] = cls.DOCUMENT_ALLOWED_EXTENSIONS
        app.config["ROOT_DOMAIN"] = cls.ROOT_DOMAIN
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
