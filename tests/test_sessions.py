"""Tests for the session manager and the /api/auth endpoints."""
from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.reservehub import auth, create_app
from app.reservehub.db import session_scope
from app.reservehub.models import AuthSession, Base, Permission, Role, User
from app.reservehub.sessions import SessionManager


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("APP_SCOPE", "dashboard")
    for k in ("CRON_SECRET", "LICENSE_KEY", "PLATFORM_ADMIN_URL", "ADMIN_API_URL", "RESEND_API_KEY", "COOKIE_SECURE", "SESSION_TTL_HOURS"):
        monkeypatch.delenv(k, raising=False)
    auth._login_attempts.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        p = Permission(key="manage_schedule", name="Manage Schedule")
        r = Role(key="manager", name="Manager")
        r.permissions.append(p)
        u = User(email="host@example.com", name="Host", password_hash=generate_password_hash("pw"), app_scope="dashboard", is_active=True)
        u.roles.append(r)
        inactive = User(email="gone@example.com", password_hash=generate_password_hash("pw"), app_scope="dashboard", is_active=False)
        s.add_all([p, r, u, inactive])
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _user_id(app, email: str) -> int:
    with session_scope(app) as s:
        return s.query(User).filter(User.email == email).one().id


def _manager(clock: FakeClock) -> SessionManager:
    return SessionManager(ttl=timedelta(hours=1), clock=clock)


class TestSessionManager:
    def test_issue_and_validate(self, app):
        clock = FakeClock(datetime(2026, 1, 1, 12, 0))
        mgr = _manager(clock)
        uid = _user_id(app, "host@example.com")
        with session_scope(app) as s:
            issued = mgr.create_session(s, uid, "dashboard")
        assert issued.expires_at == issued.issued_at + timedelta(hours=1)
        assert len(issued.token) >= 43  # 32 random bytes, urlsafe base64

        with session_scope(app) as s:
            principal = mgr.validate(s, issued.token, "dashboard")
        assert principal is not None
        assert principal.id == uid
        assert principal.app_scope == "dashboard"
        assert principal.permissions == frozenset({"manage_schedule"})

    def test_store_never_holds_raw_token(self, app):
        mgr = _manager(FakeClock(datetime(2026, 1, 1)))
        uid = _user_id(app, "host@example.com")
        with session_scope(app) as s:
            issued = mgr.create_session(s, uid, "dashboard")
        with session_scope(app) as s:
            row = s.query(AuthSession).one()
            assert row.token_hash != issued.token
            assert issued.token not in row.token_hash

    def test_tokens_are_unique(self, app):
        mgr = _manager(FakeClock(datetime(2026, 1, 1)))
        uid = _user_id(app, "host@example.com")
        with session_scope(app) as s:
            tokens = {mgr.create_session(s, uid, "dashboard").token for _ in range(20)}
        assert len(tokens) == 20

    def test_expired_session_is_unauthenticated(self, app):
        clock = FakeClock(datetime(2026, 1, 1, 12, 0))
        mgr = _manager(clock)
        uid = _user_id(app, "host@example.com")
        with session_scope(app) as s:
            issued = mgr.create_session(s, uid, "dashboard")

        clock.advance(hours=1)
        with session_scope(app) as s:
            assert mgr.validate(s, issued.token, "dashboard") is not None  # now == expires_at

        clock.advance(seconds=1)
        with session_scope(app) as s:
            assert mgr.validate(s, issued.token, "dashboard") is None

    def test_revoked_session_is_unauthenticated(self, app):
        mgr = _manager(FakeClock(datetime(2026, 1, 1)))
        uid = _user_id(app, "host@example.com")
        with session_scope(app) as s:
            issued = mgr.create_session(s, uid, "dashboard")
        with session_scope(app) as s:
            mgr.revoke(s, issued.token)
        with session_scope(app) as s:
            assert mgr.validate(s, issued.token, "dashboard") is None

    def test_revoke_is_idempotent(self, app):
        mgr = _manager(FakeClock(datetime(2026, 1, 1)))
        uid = _user_id(app, "host@example.com")
        with session_scope(app) as s:
            issued = mgr.create_session(s, uid, "dashboard")
        with session_scope(app) as s:
            mgr.revoke(s, issued.token)
            mgr.revoke(s, issued.token)
            mgr.revoke(s, "never-issued")
            mgr.revoke(s, None)
            mgr.revoke(s, "")

    def test_token_from_other_app_scope_is_rejected(self, app):
        mgr = _manager(FakeClock(datetime(2026, 1, 1)))
        uid = _user_id(app, "host@example.com")
        with session_scope(app) as s:
            issued = mgr.create_session(s, uid, "platform")
        with session_scope(app) as s:
            assert mgr.validate(s, issued.token, "dashboard") is None
            assert mgr.validate(s, issued.token, "marketing") is None

    @pytest.mark.parametrize("raw", [None, "", "garbage", "x" * 10_000])
    def test_unknown_tokens_return_none(self, app, raw):
        mgr = _manager(FakeClock(datetime(2026, 1, 1)))
        with session_scope(app) as s:
            assert mgr.validate(s, raw, "dashboard") is None

    def test_inactive_user_is_unauthenticated(self, app):
        mgr = _manager(FakeClock(datetime(2026, 1, 1)))
        uid = _user_id(app, "gone@example.com")
        with session_scope(app) as s:
            issued = mgr.create_session(s, uid, "dashboard")
        with session_scope(app) as s:
            assert mgr.validate(s, issued.token, "dashboard") is None

    def test_unknown_scope_is_rejected_at_issue(self, app):
        mgr = _manager(FakeClock(datetime(2026, 1, 1)))
        with session_scope(app) as s:
            with pytest.raises(ValueError):
                mgr.create_session(s, 1, "kiosk")

    def test_purge_expired(self, app):
        clock = FakeClock(datetime(2026, 1, 1))
        mgr = _manager(clock)
        uid = _user_id(app, "host@example.com")
        with session_scope(app) as s:
            old = mgr.create_session(s, uid, "dashboard")
        clock.advance(minutes=90)
        with session_scope(app) as s:
            fresh = mgr.create_session(s, uid, "dashboard")
        with session_scope(app) as s:
            assert mgr.purge_expired(s) == 1
        with session_scope(app) as s:
            assert mgr.validate(s, old.token, "dashboard") is None
            assert mgr.validate(s, fresh.token, "dashboard") is not None


def _login(client, email="host@example.com", password="pw"):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def test_login_sets_hardened_cookie(client):
    r = _login(client)
    assert r.status_code == 200
    assert r.json["user"]["email"] == "host@example.com"
    cookie = next(h for h in r.headers.getlist("Set-Cookie") if h.startswith("token="))
    assert "HttpOnly" in cookie
    assert "SameSite=Lax" in cookie
    assert "Path=/" in cookie
    assert f"Max-Age={7 * 24 * 3600}" in cookie


def test_cookie_is_secure_when_configured(app):
    app.config["SESSION_COOKIE_SECURE"] = True
    r = _login(app.test_client())
    cookie = next(h for h in r.headers.getlist("Set-Cookie") if h.startswith("token="))
    assert "; Secure" in cookie


def test_login_rejects_bad_password(client):
    r = _login(client, password="wrong")
    assert r.status_code == 401
    assert r.json == {"error": "Invalid credentials"}
    assert not any(h.startswith("token=") for h in r.headers.getlist("Set-Cookie"))


def test_login_rejects_user_from_other_app(app, client):
    with session_scope(app) as s:
        s.add(User(email="ops@example.com", password_hash=generate_password_hash("pw"), app_scope="platform", is_active=True))
    assert _login(client, email="ops@example.com").status_code == 401


def test_login_rate_limited(client):
    for _ in range(5):
        assert _login(client, password="wrong").status_code == 401
    assert _login(client).status_code == 429


def test_successful_login_forgets_the_address(client):
    assert _login(client, password="wrong").status_code == 401
    assert "127.0.0.1" in auth._login_attempts
    assert _login(client).status_code == 200
    assert "127.0.0.1" not in auth._login_attempts


def test_stale_attempts_are_pruned():
    auth._login_attempts["203.0.113.7"] = [datetime(2020, 1, 1)]
    assert auth._check_rate_limit("203.0.113.7") is False
    assert "203.0.113.7" not in auth._login_attempts


def test_me_requires_session(client):
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert r.json == {"error": "Not authenticated"}


def test_me_returns_user(client):
    _login(client)
    r = client.get("/api/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "host@example.com"
    assert r.json["user"]["permissions"] == ["manage_schedule"]


def test_expired_cookie_reads_as_unauthenticated(app, client):
    clock = FakeClock(datetime(2026, 1, 1))
    app.extensions["session_manager"].clock = clock
    _login(client)
    assert client.get("/api/auth/me").status_code == 200
    clock.advance(days=8)
    assert client.get("/api/auth/me").status_code == 401


def test_logout_revokes_and_clears_cookie(client):
    _login(client)
    r = client.post("/api/auth/logout")
    assert r.status_code == 200
    assert r.json == {"ok": True}
    cookie = next(h for h in r.headers.getlist("Set-Cookie") if h.startswith("token="))
    assert "Max-Age=0" in cookie
    assert client.get("/api/auth/me").status_code == 401


def test_logout_revokes_server_side_record(app, client):
    _login(client)
    raw = client.get_cookie("token").value
    client.post("/api/auth/logout")
    with session_scope(app) as s:
        assert app.extensions["session_manager"].validate(s, raw, "dashboard") is None


def test_logout_without_session_looks_the_same(client):
    r = client.post("/api/auth/logout")
    assert r.status_code == 200
    assert r.json == {"ok": True}
    cookie = next(h for h in r.headers.getlist("Set-Cookie") if h.startswith("token="))
    assert "Max-Age=0" in cookie
