import os
import secrets
from dotenv import load_dotenv

load_dotenv()

def _as_bool(v: str | None, default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}

def _secret_or_random(v: str | None) -> str:
    # unset: a per-process key, so tokens do not survive a restart
    return v if v and v.strip() else secrets.token_urlsafe(32)

def _as_optional_int(v: str | None) -> int | None:
    if v is None or not v.strip():
        return None
    return int(v)

class Settings:
    # App
    APP_NAME: str = os.getenv("APP_NAME", "book-hive")
    ENV: str = os.getenv("ENV", "dev")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    PORT: int = int(os.getenv("PORT", "8000"))

    # DB
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./bookhive.db")

    # Admin auth
    ADMIN_PASSWORD: str | None = os.getenv("ADMIN_PASSWORD")
    ADMIN_JWT_SECRET_CONFIGURED: bool = bool((os.getenv("ADMIN_JWT_SECRET") or "").strip())
    ADMIN_JWT_SECRET: str = _secret_or_random(os.getenv("ADMIN_JWT_SECRET"))
    ADMIN_TOKEN_TTL_MINUTES: int = int(os.getenv("ADMIN_TOKEN_TTL_MINUTES", "480"))

    # Circulation policy
    LATE_FEE_PER_DAY_CENTS: int = int(os.getenv("LATE_FEE_PER_DAY_CENTS", "100"))
    LATE_FEE_CAP_CENTS: int | None = _as_optional_int(os.getenv("LATE_FEE_CAP_CENTS"))
    MAX_RENEWALS: int | None = _as_optional_int(os.getenv("MAX_RENEWALS"))
    BULK_IMPORT_DEFAULT_COPIES: int = int(os.getenv("BULK_IMPORT_DEFAULT_COPIES", "2"))
    DEFAULT_LANGUAGE: str = os.getenv("DEFAULT_LANGUAGE", "English")

    # Overdue sweep
    ENABLE_OVERDUE_SCHEDULER: bool = _as_bool(os.getenv("ENABLE_OVERDUE_SCHEDULER"), False)
    OVERDUE_CHECK_INTERVAL_SECONDS: int = int(os.getenv("OVERDUE_CHECK_INTERVAL_SECONDS", "86400"))

    # Email: "log" only records messages, "graph" sends through Microsoft Graph
    EMAIL_BACKEND: str = os.getenv("EMAIL_BACKEND", "log")
    EMAIL_FROM_NAME: str = os.getenv("EMAIL_FROM_NAME", "Book Hive Library Team")
    GRAPH_TENANT_ID: str | None = os.getenv("GRAPH_TENANT_ID")
    GRAPH_CLIENT_ID: str | None = os.getenv("GRAPH_CLIENT_ID")
    GRAPH_CLIENT_SECRET: str | None = os.getenv("GRAPH_CLIENT_SECRET")
    GRAPH_USER_UPN: str | None = os.getenv("GRAPH_USER_UPN")

settings = Settings()
