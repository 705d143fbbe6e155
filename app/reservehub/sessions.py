"""
Session Manager: issues, validates and revokes server-side session tokens.

A token is only meaningful for the application scope that issued it. Every
failure mode of validate() (missing, unknown, expired, wrong scope, inactive
user) returns None, so callers cannot tell them apart.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.reservehub.config import APP_SCOPES
from app.reservehub.models import AuthSession, User
from app.reservehub.permissions import load_permissions
from app.reservehub.security import MAX_TOKEN_LENGTH, hash_token, new_session_token
from app.reservehub.utils import utcnow

logger = logging.getLogger(__name__)

COOKIE_NAMES = {
    "marketing": "customer_token",
    "platform": "platform_token",
    "dashboard": "token",
}


@dataclass(frozen=True)
class Principal:
    id: int
    email: str
    name: str | None
    app_scope: str
    permissions: frozenset[str] = field(default_factory=frozenset)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "appScope": self.app_scope,
            "permissions": sorted(self.permissions),
        }


@dataclass(frozen=True)
class IssuedSession:
    """Returned once at creation; the raw token is never readable from the store afterwards."""

    token: str
    subject_id: int
    app_scope: str
    issued_at: datetime
    expires_at: datetime


def cookie_name(app_scope: str) -> str:
    return COOKIE_NAMES[app_scope]


class SessionManager:
    def __init__(self, *, ttl: timedelta, clock: Callable[[], datetime] = utcnow) -> None:
        if ttl <= timedelta(0):
            raise ValueError("Session TTL must be positive.")
        self.ttl = ttl
        self.clock = clock

    def create_session(
        self,
        s: Session,
        subject_id: int,
        app_scope: str,
        *,
        client_ip: str | None = None,
    ) -> IssuedSession:
        if app_scope not in APP_SCOPES:
            raise ValueError(f"Unknown app scope: {app_scope!r}")
        token = new_session_token()
        now = self.clock()
        expires_at = now + self.ttl
        s.add(
            AuthSession(
                token_hash=hash_token(token),
                user_id=subject_id,
                app_scope=app_scope,
                issued_at=now,
                expires_at=expires_at,
                client_ip=client_ip,
            )
        )
        s.flush()
        return IssuedSession(
            token=token,
            subject_id=subject_id,
            app_scope=app_scope,
            issued_at=now,
            expires_at=expires_at,
        )

    def validate(self, s: Session, raw_token: str | None, expected_app_scope: str) -> Principal | None:
        if not raw_token or len(raw_token) > MAX_TOKEN_LENGTH:
            return None
        row = s.execute(
            select(AuthSession.user_id, AuthSession.app_scope, AuthSession.expires_at).where(
                AuthSession.token_hash == hash_token(raw_token)
            )
        ).one_or_none()
        if row is None:
            return None
        user_id, app_scope, expires_at = row
        if app_scope != expected_app_scope:
            return None
        if self.clock() > expires_at:
            return None

        user = s.execute(
            select(User.id, User.email, User.name, User.is_active, User.app_scope).where(User.id == user_id)
        ).one_or_none()
        if user is None or not user.is_active or user.app_scope != expected_app_scope:
            return None
        return Principal(
            id=user.id,
            email=user.email,
            name=user.name,
            app_scope=app_scope,
            permissions=load_permissions(s, user.id),
        )

    def revoke(self, s: Session, raw_token: str | None) -> None:
        """Idempotent: unknown or already-revoked tokens are not an error."""
        if not raw_token or len(raw_token) > MAX_TOKEN_LENGTH:
            return
        s.execute(delete(AuthSession).where(AuthSession.token_hash == hash_token(raw_token)))

    def purge_expired(self, s: Session) -> int:
        result = s.execute(delete(AuthSession).where(AuthSession.expires_at < self.clock()))
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %s expired sessions", purged)
        return purged


def set_session_cookie(response, issued: IssuedSession, *, secure: bool) -> None:
    max_age = int((issued.expires_at - issued.issued_at).total_seconds())
    response.set_cookie(
        cookie_name(issued.app_scope),
        issued.token,
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=True,
        samesite="Lax",
    )


def clear_session_cookie(response, app_scope: str, *, secure: bool) -> None:
    response.set_cookie(
        cookie_name(app_scope),
        "",
        max_age=0,
        expires=0,
        path="/",
        secure=secure,
        httponly=True,
        samesite="Lax",
    )
