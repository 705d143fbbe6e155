import io
import json
import re
import urllib.error
from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.reservehub import auth, create_app
from app.reservehub.db import session_scope
from app.reservehub.errors import LicenseValidationError
from app.reservehub.models import AuditEvent, Base, Permission, Role, User
from app.reservehub.modules.licensing import service
from app.reservehub.modules.licensing.models import IssuedLicense, LicenseState
from app.reservehub.modules.licensing.service import (
    AuthorityVerdict,
    DatabaseLicenseAuthority,
    HttpLicenseAuthority,
    LicenseInfo,
    LicenseValidator,
    issue_license,
    mask_license_key,
)

KEY = "RS-ABCD-EFGH-JKLM"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeAuthority:
    def __init__(self, verdict: AuthorityVerdict | None = None):
        self.verdict = verdict or AuthorityVerdict(status="active", plan="SERVICE_PRO", features=frozenset({"sms"}))
        self.calls = 0
        self.fail = False

    def check(self, license_key: str) -> AuthorityVerdict:
        self.calls += 1
        if self.fail:
            raise LicenseValidationError("authority unreachable")
        return self.verdict


def _make_app(tmp_path, monkeypatch, *, scope: str = "dashboard", license_key: str | None = None):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("APP_SCOPE", scope)
    for k in ("CRON_SECRET", "PLATFORM_ADMIN_URL", "ADMIN_API_URL", "RESEND_API_KEY", "COOKIE_SECURE"):
        monkeypatch.delenv(k, raising=False)
    if license_key:
        monkeypatch.setenv("LICENSE_KEY", license_key)
    else:
        monkeypatch.delenv("LICENSE_KEY", raising=False)
    auth._login_attempts.clear()
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


@pytest.fixture()
def app(tmp_path, monkeypatch):
    return _make_app(tmp_path, monkeypatch)


@pytest.fixture()
def platform_app(tmp_path, monkeypatch):
    return _make_app(tmp_path, monkeypatch, scope="platform")


def _validator(app, authority, clock, key=KEY) -> LicenseValidator:
    return LicenseValidator(
        session_factory=app.extensions["sqlalchemy_sessionmaker"],
        authority=authority,
        freshness=timedelta(hours=1),
        clock=clock,
        configured_key=key,
    )


class TestMasking:
    def test_only_last_four_characters_survive(self):
        assert mask_license_key("ABCD-1234-EFGH-5678") == "****-5678"

    def test_short_and_missing_keys(self):
        assert mask_license_key("ABCD") == "****"
        assert mask_license_key("") is None
        assert mask_license_key(None) is None

    def test_public_dict_never_contains_full_key(self):
        info = LicenseInfo(key=KEY, plan="CORE", status="active", last_check=datetime(2026, 1, 1))
        data = info.public_dict()
        assert data == {
            "key": "****-JKLM",
            "valid": True,
            "plan": "CORE",
            "status": "active",
            "lastCheck": "2026-01-01T00:00:00Z",
        }
        assert KEY not in json.dumps(data)

    def test_valid_is_derived_from_status(self):
        info = LicenseInfo(key=KEY, plan="CORE", status="expired", last_check=None)
        assert info.valid is False
        with pytest.raises(AttributeError):
            info.valid = True  # type: ignore[misc]


class TestLicenseValidator:
    def test_fresh_answer_is_cached(self, app):
        clock = FakeClock(datetime(2026, 1, 1, 12, 0))
        authority = FakeAuthority()
        v = _validator(app, authority, clock)

        first = v.get_license_info()
        assert first.status == "active"
        assert first.valid
        assert first.plan == "SERVICE_PRO"
        assert first.last_check == clock.now

        clock.advance(minutes=59)
        assert v.get_license_info() == first
        assert authority.calls == 1

        clock.advance(minutes=2)
        v.get_license_info()
        assert authority.calls == 2

    def test_refresh_ignores_freshness(self, app):
        authority = FakeAuthority()
        v = _validator(app, authority, FakeClock(datetime(2026, 1, 1)))
        v.get_license_info()
        v.refresh()
        assert authority.calls == 2

    def test_serves_last_known_good_when_authority_is_down(self, app):
        clock = FakeClock(datetime(2026, 1, 1, 12, 0))
        authority = FakeAuthority()
        v = _validator(app, authority, clock)
        good = v.get_license_info()

        authority.fail = True
        clock.advance(hours=2)
        stale = v.get_license_info()
        assert stale.status == "active"
        assert stale.last_check == good.last_check
        # Retries on each call while stale.
        v.get_license_info()
        assert authority.calls == 3

    def test_never_validated_reports_invalid(self, app):
        authority = FakeAuthority()
        authority.fail = True
        v = _validator(app, authority, FakeClock(datetime(2026, 1, 1)))
        info = v.get_license_info()
        assert info.status == "invalid"
        assert not info.valid
        assert info.last_check is None

    def test_no_key_is_invalid_without_asking(self, app):
        authority = FakeAuthority()
        v = _validator(app, authority, FakeClock(datetime(2026, 1, 1)), key="")
        info = v.get_license_info()
        assert info.status == "invalid"
        assert info.key is None
        assert authority.calls == 0

    def test_negative_verdict_is_recorded(self, app):
        authority = FakeAuthority(AuthorityVerdict(status="suspended", plan="FULL_SUITE"))
        v = _validator(app, authority, FakeClock(datetime(2026, 1, 1)))
        info = v.get_license_info()
        assert info.status == "suspended"
        assert not info.valid
        assert not info.has_feature("sms")

    def test_state_is_persisted_and_reloaded(self, app):
        clock = FakeClock(datetime(2026, 1, 1, 12, 0))
        _validator(app, FakeAuthority(), clock).get_license_info()

        with session_scope(app) as s:
            row = s.get(LicenseState, 1)
            assert row.license_key == KEY
            assert row.status == "active"
            assert row.features == "sms"

        # A restarted process keeps serving the stored state while the authority is down.
        down = FakeAuthority()
        down.fail = True
        clock.advance(hours=3)
        info = _validator(app, down, clock).get_license_info()
        assert info.status == "active"
        assert info.has_feature("sms")
        assert info.last_check == datetime(2026, 1, 1, 12, 0)

    def test_stored_key_is_used_when_none_is_configured(self, app):
        clock = FakeClock(datetime(2026, 1, 1))
        _validator(app, FakeAuthority(), clock).get_license_info()
        authority = FakeAuthority()
        info = _validator(app, authority, clock, key="").get_license_info()
        assert info.key == KEY
        assert authority.calls == 0

    def test_changed_key_is_revalidated(self, app):
        clock = FakeClock(datetime(2026, 1, 1))
        _validator(app, FakeAuthority(), clock).get_license_info()
        authority = FakeAuthority()
        authority.fail = True
        info = _validator(app, authority, clock, key="RS-ZZZZ-ZZZZ-ZZZZ").get_license_info()
        assert authority.calls == 1
        assert info.status == "invalid"

    def test_unknown_authority_status_is_rejected(self):
        with pytest.raises(LicenseValidationError):
            AuthorityVerdict(status="maybe")


class TestIssuedLicenses:
    def test_generated_key_format(self, platform_app):
        with session_scope(platform_app) as s:
            lic = issue_license(s, plan="service_pro", holder_email="owner@example.com")
            assert re.fullmatch(r"RS-[A-Z2-9]{4}-[A-Z2-9]{4}-[A-Z2-9]{4}", lic.license_key)
            assert lic.plan == "SERVICE_PRO"

    def test_unknown_plan_is_rejected(self, platform_app):
        with session_scope(platform_app) as s:
            with pytest.raises(ValueError):
                issue_license(s, plan="ENTERPRISE")

    def test_database_authority_resolves_plan_and_addons(self, platform_app):
        with session_scope(platform_app) as s:
            s.add(IssuedLicense(license_key=KEY, plan="CORE", status="active", addon_floorplan=True))
        authority = DatabaseLicenseAuthority(platform_app.extensions["sqlalchemy_sessionmaker"])
        verdict = authority.check(KEY)
        assert verdict.status == "active"
        assert verdict.features == frozenset({"floorplan"})
        assert authority.check("RS-NOPE-NOPE-NOPE").status == "invalid"

    def test_database_authority_expiry_and_suspension(self, platform_app):
        now = datetime(2026, 6, 1)
        with session_scope(platform_app) as s:
            s.add(IssuedLicense(license_key="RS-EXPD-EXPD-EXPD", plan="CORE", status="active", expires_at=now - timedelta(days=1)))
            s.add(IssuedLicense(license_key="RS-SUSP-SUSP-SUSP", plan="CORE", status="cancelled"))
        authority = DatabaseLicenseAuthority(platform_app.extensions["sqlalchemy_sessionmaker"], clock=lambda: now)
        assert authority.check("RS-EXPD-EXPD-EXPD").status == "expired"
        assert authority.check("RS-SUSP-SUSP-SUSP").status == "suspended"


def test_validate_endpoint(platform_app):
    with session_scope(platform_app) as s:
        s.add(IssuedLicense(license_key=KEY, plan="FULL_SUITE", status="active"))
        s.add(IssuedLicense(license_key="RS-SUSP-SUSP-SUSP", plan="CORE", status="suspended"))
    client = platform_app.test_client()

    r = client.post("/api/license/validate", json={"licenseKey": KEY})
    assert r.status_code == 200
    assert r.json["valid"] is True
    assert r.json["plan"] == "FULL_SUITE"
    assert r.json["features"] == sorted(service.FEATURES)
    assert KEY not in r.get_data(as_text=True)

    r = client.post("/api/license/validate", json={"licenseKey": "RS-SUSP-SUSP-SUSP"})
    assert r.status_code == 403
    assert r.json["status"] == "suspended"

    r = client.post("/api/license/validate", json={"licenseKey": "RS-NOPE-NOPE-NOPE"})
    assert r.status_code == 401
    assert r.json["valid"] is False

    assert client.post("/api/license/validate", json={}).status_code == 400


def test_validate_endpoint_only_exists_on_platform(app):
    r = app.test_client().post("/api/license/validate", json={"licenseKey": KEY})
    assert r.status_code == 404


def test_health_masks_configured_key(tmp_path, monkeypatch):
    app = _make_app(tmp_path, monkeypatch, license_key=KEY)
    r = app.test_client().get("/api/health")
    assert r.status_code == 200
    assert r.json["status"] == "ok"
    assert r.json["license"]["key"] == "****-JKLM"
    # No authority configured: never validated.
    assert r.json["license"]["status"] == "invalid"
    assert r.json["license"]["valid"] is False
    assert KEY not in r.get_data(as_text=True)


def test_license_endpoints_require_billing(app):
    with session_scope(app) as s:
        p = Permission(key="manage_billing", name="Manage Billing")
        role = Role(key="admin", name="Administrator")
        role.permissions.append(p)
        u = User(email="owner@example.com", password_hash=generate_password_hash("pw"), app_scope="dashboard", is_active=True)
        u.roles.append(role)
        plain = User(email="host@example.com", password_hash=generate_password_hash("pw"), app_scope="dashboard", is_active=True)
        s.add_all([p, role, u, plain])
    app.extensions["license_validator"] = _validator(app, FakeAuthority(), FakeClock(datetime(2026, 1, 1)))

    client = app.test_client()
    assert client.get("/api/license").status_code == 401
    client.post("/api/auth/login", json={"email": "host@example.com", "password": "pw"})
    assert client.get("/api/license").status_code == 403

    owner = app.test_client()
    owner.post("/api/auth/login", json={"email": "owner@example.com", "password": "pw"})
    r = owner.get("/api/license")
    assert r.status_code == 200
    assert r.json["license"]["key"] == "****-JKLM"
    r = owner.post("/api/license/refresh")
    assert r.status_code == 200
    assert r.json["license"]["status"] == "active"
    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "license.refresh").one()
        assert KEY not in (ev.metadata_json or "")


class FakeResponse:
    def __init__(self, payload: dict):
        self._raw = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class TestHttpLicenseAuthority:
    def test_active_response(self, monkeypatch):
        seen = {}

        def fake_urlopen(req, timeout=None):
            seen["url"] = req.full_url
            seen["body"] = json.loads(req.data.decode("utf-8"))
            return FakeResponse({"valid": True, "status": "active", "plan": "SERVICE_PRO", "features": ["sms", "bogus"]})

        monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
        verdict = HttpLicenseAuthority("https://admin.example.com/").check(KEY)
        assert seen["url"] == "https://admin.example.com/api/license/validate"
        assert seen["body"] == {"licenseKey": KEY}
        assert verdict.status == "active"
        assert verdict.plan == "SERVICE_PRO"
        assert verdict.features == frozenset({"sms"})

    def test_rejection_is_a_verdict(self, monkeypatch):
        def fake_urlopen(req, timeout=None):
            body = io.BytesIO(b'{"valid": false, "status": "expired", "plan": "CORE"}')
            raise urllib.error.HTTPError(req.full_url, 403, "Forbidden", None, body)

        monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
        verdict = HttpLicenseAuthority("https://admin.example.com").check(KEY)
        assert verdict.status == "expired"

    def test_unknown_key_is_invalid(self, monkeypatch):
        def fake_urlopen(req, timeout=None):
            raise urllib.error.HTTPError(req.full_url, 401, "Unauthorized", None, io.BytesIO(b"{}"))

        monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
        assert HttpLicenseAuthority("https://admin.example.com").check(KEY).status == "invalid"

    @pytest.mark.parametrize(
        "error",
        [
            urllib.error.URLError("connection refused"),
            TimeoutError("timed out"),
            urllib.error.HTTPError("https://admin.example.com", 502, "Bad Gateway", None, io.BytesIO(b"")),
        ],
    )
    def test_transport_failures_raise(self, monkeypatch, error):
        def fake_urlopen(req, timeout=None):
            raise error

        monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
        with pytest.raises(LicenseValidationError):
            HttpLicenseAuthority("https://admin.example.com").check(KEY)
