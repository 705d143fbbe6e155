import logging
import os
import time
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g
from sqlalchemy import inspect as sa_inspect
from werkzeug.exceptions import HTTPException

from app.reservehub.config import APP_SCOPES, load_config
from app.reservehub.db import init_db, teardown_db_session
from app.reservehub.errors import AccessDenied
from app.reservehub.routes import bp as routes_bp
from app.reservehub.auth import assign_request_id, bp as auth_bp
from app.reservehub.admin import bp as admin_bp
from app.reservehub.cron import bp as cron_bp
from app.reservehub.modules.licensing.admin import bp as licensing_bp
from app.reservehub.modules.email_sequences.admin import bp as email_sequences_bp
from app.reservehub.modules.email_sequences.mailer import ResendMailer
from app.reservehub.modules.licensing.service import DatabaseLicenseAuthority, HttpLicenseAuthority, LicenseValidator
from app.reservehub.sessions import SessionManager

REQUIRED_TABLES = (
    "users",
    "roles",
    "permissions",
    "auth_sessions",
    "license_state",
    "email_sequence_steps",
    "audit_events",
)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    scope = app.config["APP_SCOPE"]
    if scope not in APP_SCOPES:
        raise RuntimeError(f"APP_SCOPE must be one of {', '.join(APP_SCOPES)} (got {scope!r}).")

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("CRON_SECRET"):
            app.logger.warning("CRON_SECRET is not set; every /api/cron call will be refused.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    sm = app.extensions["sqlalchemy_sessionmaker"]
    if scope == "platform":
        authority = DatabaseLicenseAuthority(sm)
    elif app.config.get("PLATFORM_ADMIN_URL"):
        authority = HttpLicenseAuthority(app.config["PLATFORM_ADMIN_URL"])
    else:
        authority = None
        app.logger.warning("PLATFORM_ADMIN_URL not set; license cannot be validated.")

    app.extensions["session_manager"] = SessionManager(ttl=timedelta(hours=app.config["SESSION_TTL_HOURS"]))
    app.extensions["license_validator"] = LicenseValidator(
        session_factory=sm,
        authority=authority,
        freshness=timedelta(seconds=app.config["LICENSE_FRESHNESS_SECONDS"]),
        configured_key=app.config.get("LICENSE_KEY") or "",
    )
    app.extensions["mailer"] = ResendMailer(api_key=app.config["RESEND_API_KEY"], sender=app.config["EMAIL_FROM"])
    app.extensions["started_at_monotonic"] = time.monotonic()

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(admin_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(licensing_bp)
    app.register_blueprint(email_sequences_bp)

    app.before_request(assign_request_id)
    app.teardown_appcontext(teardown_db_session)

    def _run_schema_health_check() -> None:
        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
            return
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.errorhandler(AccessDenied)
    def _access_denied(e: AccessDenied):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return {"error": e.public_message}, e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):  # type: ignore[no-redef]
        return {"error": e.name}, e.code or 500

    @app.errorhandler(Exception)
    def _err_500(e: Exception):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return {"error": "Internal server error"}, 500

    logging.getLogger(__name__).info("create_app() complete; scope=%s app ready to serve", scope)

    return app
