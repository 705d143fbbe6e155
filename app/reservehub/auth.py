from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, request
from sqlalchemy import select
from werkzeug.security import check_password_hash

from app.reservehub.audit import record_event
from app.reservehub.db import db_session
from app.reservehub.models import User
from app.reservehub.rbac import require_session
from app.reservehub.sessions import SessionManager, clear_session_cookie, cookie_name, set_session_cookie
from app.reservehub.utils import utcnow

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    recent = [t for t in _login_attempts.get(ip, ()) if t > cutoff]
    if not recent:
        # Idle addresses drop out so the table only holds the current window.
        _login_attempts.pop(ip, None)
        return False
    _login_attempts[ip] = recent
    return len(recent) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(utcnow())


def _session_manager() -> SessionManager:
    return current_app.extensions["session_manager"]


def assign_request_id() -> None:
    """Per-request id for audit/log correlation."""
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex


@bp.post("/login")
def login_post():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = request.form
    email = (body.get("email") or "").strip().lower()
    password = body.get("password") or ""
    ip = request.remote_addr or "unknown"
    scope = current_app.config["APP_SCOPE"]

    if _check_rate_limit(ip):
        return {"error": "Too many login attempts. Please wait 5 minutes."}, 429
    _record_attempt(ip)

    s = db_session()
    user = s.execute(select(User).where(User.email == email, User.app_scope == scope)).scalar_one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email, "scope": scope},
        )
        s.commit()
        return {"error": "Invalid credentials"}, 401

    issued = _session_manager().create_session(s, user.id, scope, client_ip=ip)
    principal = _session_manager().validate(s, issued.token, scope)
    _login_attempts.pop(ip, None)
    record_event(s, actor_id=user.id, actor_email=user.email, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()

    resp = current_app.make_response(({"user": principal.to_dict() if principal else None}, 200))
    set_session_cookie(resp, issued, secure=current_app.config["SESSION_COOKIE_SECURE"])
    return resp


@bp.get("/me")
def me():
    principal = require_session()
    return {"user": principal.to_dict()}


@bp.post("/logout")
def logout():
    scope = current_app.config["APP_SCOPE"]
    raw_token = request.cookies.get(cookie_name(scope))
    s = db_session()
    try:
        principal = _session_manager().validate(s, raw_token, scope)
        _session_manager().revoke(s, raw_token)
        if principal:
            record_event(s, actor_id=principal.id, actor_email=principal.email, action="auth.logout", entity_type="User", entity_id=str(principal.id))
        s.commit()
    except Exception:
        s.rollback()
        current_app.logger.exception("Logout cleanup failed (request_id=%s); clearing cookie anyway", getattr(g, "request_id", None))

    # Same response whether or not a session existed.
    resp = current_app.make_response(({"ok": True}, 200))
    clear_session_cookie(resp, scope, secure=current_app.config["SESSION_COOKIE_SECURE"])
    return resp
