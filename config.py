import os
from datetime import timedelta
from urllib.parse import urlparse, urlunparse

DEFAULT_DATABASE_URL = "sqlite:///taxi_ledger.db"

COMMISSION_MODES = {"gross", "post_expense"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    text = value.strip()
    if not text:
        return default
    try:
        return float(text)
    except ValueError:
        return default


def _env_decimal_text(name: str, default: str) -> str:
    value = (os.getenv(name) or "").strip()
    if not value:
        return default
    try:
        float(value)
    except ValueError:
        return default
    return value


def _env_commission_mode(name: str, default: str) -> str:
    value = (os.getenv(name) or "").strip().lower().replace("-", "_")
    return value if value in COMMISSION_MODES else default


def _normalize_db_url(url: str) -> str:
    if not url:
        return DEFAULT_DATABASE_URL

    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    parsed = urlparse(url)

    if parsed.scheme not in {"postgresql", "postgresql+psycopg2"}:
        return url

    def _preferred_db_name() -> str | None:
        for key in ("PGDATABASE", "POSTGRES_DB", "POSTGRES_DATABASE", "DATABASE_NAME"):
            value = os.getenv(key)
            if value:
                return value
        return None

    path = (parsed.path or "").lstrip("/")
    preferred_db = _preferred_db_name()

    if preferred_db:
        if not path:
            parsed = parsed._replace(path=f"/{preferred_db}")
        elif path == "postgres" and preferred_db != "postgres":
            parsed = parsed._replace(path=f"/{preferred_db}")

    return urlunparse(parsed)


def _env_database_url() -> str | None:
    url = os.getenv("DATABASE_URL")
    return url if url and url.strip() else None


def current_database_url() -> str:
    return _normalize_db_url(_env_database_url() or DEFAULT_DATABASE_URL)


def _env_sqlalchemy_database_uri() -> str | None:
    uri = os.getenv("SQLALCHEMY_DATABASE_URI")
    return uri if uri and uri.strip() else None


class Config:
    SQLALCHEMY_DATABASE_URI = _env_sqlalchemy_database_uri() or current_database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=10)
    ENV = os.getenv("FLASK_ENV", "production")

    # Fallbacks used when the configuration table has no override.
    DRIVER_BASE_SALARY = _env_decimal_text("DRIVER_BASE_SALARY", "1400")
    DRIVER_COMMISSION_RATE = _env_decimal_text("DRIVER_COMMISSION_RATE", "0.35")
    COMMISSION_MODE_ADMIN = _env_commission_mode("COMMISSION_MODE_ADMIN", "gross")
    COMMISSION_MODE_DRIVER = _env_commission_mode("COMMISSION_MODE_DRIVER", "post_expense")

    API_CACHE_TTL = _env_float("API_CACHE_TTL", 60.0)
