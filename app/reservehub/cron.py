"""
Scheduler entry points: GET /api/cron/<job>?secret=...

The shared secret is checked before the job name is even looked up, so an
unauthenticated caller learns nothing about which jobs exist.
"""
from __future__ import annotations

from collections.abc import Callable
from typing import Any

from flask import Blueprint, current_app, request
from sqlalchemy.orm import Session

from app.reservehub.audit import record_event
from app.reservehub.db import db_session
from app.reservehub.errors import Unauthorized
from app.reservehub.modules.email_sequences.service import process_pending_emails
from app.reservehub.security import secrets_match

bp = Blueprint("cron", __name__)


def _run_email_sequences(s: Session) -> dict[str, Any]:
    result = process_pending_emails(
        s,
        mailer=current_app.extensions["mailer"],
        limit=current_app.config["EMAIL_BATCH_LIMIT"],
        max_attempts=current_app.config["EMAIL_MAX_ATTEMPTS"],
    )
    return result.to_dict()


def _run_session_cleanup(s: Session) -> dict[str, Any]:
    purged = current_app.extensions["session_manager"].purge_expired(s)
    return {"purged": purged}


def _run_license_refresh(s: Session) -> dict[str, Any]:
    return {"license": current_app.extensions["license_validator"].refresh().public_dict()}


JOBS: dict[str, Callable[[Session], dict[str, Any]]] = {
    "email-sequences": _run_email_sequences,
    "session-cleanup": _run_session_cleanup,
    "license-refresh": _run_license_refresh,
}


@bp.get("/api/cron/<job>")
def run_job(job: str):
    if not secrets_match(request.args.get("secret"), current_app.config.get("CRON_SECRET")):
        raise Unauthorized()

    runner = JOBS.get(job)
    if runner is None:
        return {"error": "Unknown job"}, 404

    s = db_session()
    summary = runner(s)
    record_event(s, action="cron.run", entity_type="CronJob", entity_id=job, metadata=summary)
    s.commit()
    current_app.logger.info("Cron job %s finished: %s", job, summary)
    return summary
