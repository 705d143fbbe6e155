import os
from dataclasses import dataclass

APP_SCOPES = ("marketing", "platform", "dashboard")


@dataclass(frozen=True)
class Settings:
    env: str
    database_url: str
    app_scope: str
    app_version: str

    cron_secret: str
    session_ttl_hours: int
    cookie_secure: bool

    license_key: str
    platform_admin_url: str
    license_freshness_seconds: int

    resend_api_key: str
    email_from: str
    email_batch_limit: int
    email_max_attempts: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def _cookie_secure(env: str) -> bool:
    override = _getenv("COOKIE_SECURE").lower()
    if override in ("1", "true", "yes"):
        return True
    if override in ("0", "false", "no"):
        return False
    return env in ("prod", "production")


def load_settings() -> Settings:
    env = _getenv("ENV", "development").lower()
    return Settings(
        env=env,
        database_url=_getenv("DATABASE_URL", "sqlite:///reservehub.db"),
        app_scope=_getenv("APP_SCOPE", "dashboard").lower(),
        app_version=_getenv("APP_VERSION", "1.0.0"),
        cron_secret=_getenv("CRON_SECRET", ""),
        session_ttl_hours=_getenv_int("SESSION_TTL_HOURS", 24 * 7),
        cookie_secure=_cookie_secure(env),
        license_key=_getenv("LICENSE_KEY", ""),
        platform_admin_url=_getenv("PLATFORM_ADMIN_URL", "") or _getenv("ADMIN_API_URL", ""),
        license_freshness_seconds=_getenv_int("LICENSE_FRESHNESS_SECONDS", 3600),
        resend_api_key=_getenv("RESEND_API_KEY", ""),
        email_from=_getenv("PLATFORM_EMAIL_FROM", "ReserveHub <reservations@reservehub.app>"),
        email_batch_limit=_getenv_int("EMAIL_BATCH_LIMIT", 20),
        email_max_attempts=_getenv_int("EMAIL_MAX_ATTEMPTS", 3),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_SCOPE": s.app_scope,
        "APP_VERSION": s.app_version,
        "CRON_SECRET": s.cron_secret,
        "SESSION_TTL_HOURS": s.session_ttl_hours,
        "LICENSE_KEY": s.license_key,
        "PLATFORM_ADMIN_URL": s.platform_admin_url,
        "LICENSE_FRESHNESS_SECONDS": s.license_freshness_seconds,
        "RESEND_API_KEY": s.resend_api_key,
        "EMAIL_FROM": s.email_from,
        "EMAIL_BATCH_LIMIT": s.email_batch_limit,
        "EMAIL_MAX_ATTEMPTS": s.email_max_attempts,
        # cookie defaults
        "SESSION_COOKIE_SECURE": s.cookie_secure,
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "MAX_CONTENT_LENGTH": 1 * 1024 * 1024,
    }
