"""
Release phase for one deployed app scope.

Applies Alembic migrations, seeds the capability registry, default roles and the
scope's admin account, then checks the licensing setup that scope depends on:

- platform: reports how many license keys are issued and active.
- dashboard: warns when no LICENSE_KEY or authority URL is configured, since the
  instance would run on the CORE plan only.

Usage:
  APP_SCOPE=platform python scripts/release.py
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import func, select

from app.reservehub.config import APP_SCOPES, Settings, load_settings
from app.reservehub.db import script_session
from app.reservehub.modules.licensing.models import IssuedLicense
from app.reservehub.modules.licensing.service import mask_license_key

logger = logging.getLogger("reservehub.release")


def _migrate(database_url: str) -> str:
    from alembic import command
    from alembic.config import Config
    from alembic.script import ScriptDirectory

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(cfg, "head")
    return ScriptDirectory.from_config(cfg).get_current_head() or ""


def _check_platform(database_url: str) -> dict[str, object]:
    with script_session(database_url) as s:
        active = s.execute(
            select(func.count(IssuedLicense.id)).where(IssuedLicense.status == "active")
        ).scalar_one()
    logger.info("Platform has %s active license key(s).", active)
    return {"activeLicenses": active}


def _check_dashboard(settings: Settings) -> dict[str, object]:
    masked = mask_license_key(settings.license_key or None)
    if not masked or not settings.platform_admin_url:
        logger.warning("LICENSE_KEY or PLATFORM_ADMIN_URL is unset; this instance will run on CORE features only.")
    return {"licenseKey": masked, "licenseAuthority": settings.platform_admin_url or None}


def run_release(settings: Settings | None = None) -> dict[str, object]:
    """
    Migrate and seed the database for settings.app_scope. Returns a summary of what ran.
    """
    settings = settings or load_settings()
    if settings.app_scope not in APP_SCOPES:
        raise RuntimeError(f"Unknown APP_SCOPE {settings.app_scope!r}; expected one of {', '.join(APP_SCOPES)}.")
    if settings.env in ("prod", "production") and settings.database_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")

    logger.info("Release start: scope=%s env=%s", settings.app_scope, settings.env)
    revision = _migrate(settings.database_url)
    logger.info("Migrated to %s.", revision)

    from scripts import init_db

    init_db.seed_only(database_url=settings.database_url, app_scope=settings.app_scope)

    summary: dict[str, object] = {"scope": settings.app_scope, "revision": revision}
    if settings.app_scope == "platform":
        summary.update(_check_platform(settings.database_url))
    elif settings.app_scope == "dashboard":
        summary.update(_check_dashboard(settings))
    logger.info("Release done: %s", summary)
    return summary


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        run_release()
    except Exception:
        logger.exception("Release failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
