"""
License Validator.

Keeps the instance's entitlement (plan, status, lastCheck) cached in memory and in
the single-row `license_state` table, and only asks the licensing authority again
once the cached answer is older than the freshness window.

Failure policy when the authority is unreachable: serve the last-known-good state
unchanged (its `last_check` shows how old it is) and retry on the next call. An
instance that has never completed a validation reports status "invalid".
"""
from __future__ import annotations

import json
import logging
import secrets
import threading
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy.orm import Session, sessionmaker

from app.reservehub.errors import LicenseValidationError
from app.reservehub.modules.licensing.models import IssuedLicense, LicenseState
from app.reservehub.utils import iso_or_none, utcnow

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_SUSPENDED = "suspended"
STATUS_INVALID = "invalid"
LICENSE_STATUSES = (STATUS_ACTIVE, STATUS_EXPIRED, STATUS_SUSPENDED, STATUS_INVALID)

DEFAULT_PLAN = "CORE"
PLANS = ("CORE", "SERVICE_PRO", "FULL_SUITE")

FEATURES = ("sms", "floorplan", "reporting", "guest_history", "event_ticketing")
PLAN_FEATURES: dict[str, frozenset[str]] = {
    "CORE": frozenset(),
    "SERVICE_PRO": frozenset({"sms", "floorplan", "reporting"}),
    "FULL_SUITE": frozenset(FEATURES),
}

_STATE_ID = 1
_MASK = "****"
_KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def mask_license_key(key: str | None) -> str | None:
    """Only the last 4 characters ever leave the process."""
    if not key:
        return None
    if len(key) <= 4:
        return _MASK
    return f"{_MASK}-{key[-4:]}"


def plan_features(plan: str, addons: frozenset[str] = frozenset()) -> frozenset[str]:
    return PLAN_FEATURES.get(plan, frozenset()) | (addons & frozenset(FEATURES))


@dataclass(frozen=True)
class AuthorityVerdict:
    status: str
    plan: str = DEFAULT_PLAN
    features: frozenset[str] = field(default_factory=frozenset)
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.status not in LICENSE_STATUSES:
            raise LicenseValidationError(f"Unknown license status {self.status!r}")


@dataclass(frozen=True)
class LicenseInfo:
    key: str | None
    plan: str
    status: str
    last_check: datetime | None
    features: frozenset[str] = field(default_factory=frozenset)

    @property
    def valid(self) -> bool:
        return self.status == STATUS_ACTIVE

    def has_feature(self, feature: str) -> bool:
        return self.valid and feature in self.features

    def public_dict(self) -> dict[str, Any]:
        return {
            "key": mask_license_key(self.key),
            "valid": self.valid,
            "plan": self.plan,
            "status": self.status,
            "lastCheck": iso_or_none(self.last_check),
        }


class LicenseAuthority(Protocol):
    def check(self, license_key: str) -> AuthorityVerdict: ...


@dataclass(frozen=True)
class HttpLicenseAuthority:
    """Asks the platform admin app (`POST /api/license/validate`)."""

    base_url: str
    timeout_seconds: int = 5

    def check(self, license_key: str) -> AuthorityVerdict:
        url = self.base_url.rstrip("/") + "/api/license/validate"
        body = json.dumps({"licenseKey": license_key}).encode("utf-8")
        req = urllib.request.Request(url, data=body, method="POST")
        req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                payload = _decode(resp.read())
        except urllib.error.HTTPError as e:
            if e.code not in (401, 403):
                raise LicenseValidationError(f"HTTP {e.code} from licensing authority") from e
            try:
                payload = _decode(e.read())
            except LicenseValidationError:
                payload = {}
            # A definite "no": unknown keys come back 401, blocked ones 403 with a status.
            status = str(payload.get("status") or "").lower()
            if status not in (STATUS_EXPIRED, STATUS_SUSPENDED):
                status = STATUS_INVALID
            return AuthorityVerdict(status=status, plan=_plan(payload))
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise LicenseValidationError(f"Licensing authority unreachable: {e}") from e

        status = str(payload.get("status") or "").lower()
        if not payload.get("valid") or status != STATUS_ACTIVE:
            raise LicenseValidationError("Licensing authority returned an inconsistent answer")
        features = payload.get("features") or []
        if not isinstance(features, list):
            features = []
        return AuthorityVerdict(
            status=STATUS_ACTIVE,
            plan=_plan(payload),
            features=frozenset(str(f) for f in features) & frozenset(FEATURES),
        )


def _decode(raw: bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise LicenseValidationError("Invalid JSON from licensing authority") from e
    if not isinstance(data, dict):
        raise LicenseValidationError("Unexpected payload from licensing authority")
    return data


def _plan(payload: dict[str, Any]) -> str:
    plan = str(payload.get("plan") or DEFAULT_PLAN).upper()
    return plan if plan in PLANS else DEFAULT_PLAN


def generate_license_key() -> str:
    """RS-XXXX-XXXX-XXXX from an unambiguous alphabet (no 0/O, 1/I)."""
    groups = ["".join(secrets.choice(_KEY_ALPHABET) for _ in range(4)) for _ in range(3)]
    return "RS-" + "-".join(groups)


def issue_license(
    s: Session,
    *,
    plan: str,
    holder_name: str | None = None,
    holder_email: str | None = None,
    expires_at: datetime | None = None,
) -> IssuedLicense:
    plan = plan.upper()
    if plan not in PLANS:
        raise ValueError(f"Unknown plan {plan!r}; expected one of {', '.join(PLANS)}.")
    while True:
        key = generate_license_key()
        taken = s.query(IssuedLicense.id).filter(IssuedLicense.license_key == key).first()
        if not taken:
            break
    lic = IssuedLicense(
        license_key=key,
        plan=plan,
        status="active",
        holder_name=holder_name,
        holder_email=holder_email,
        expires_at=expires_at,
    )
    s.add(lic)
    s.flush()
    logger.info("Issued license %s plan=%s", mask_license_key(key), plan)
    return lic


def resolve_issued_license(s: Session, license_key: str, *, now: datetime) -> AuthorityVerdict:
    """Platform-side decision for one key."""
    lic = s.query(IssuedLicense).filter(IssuedLicense.license_key == license_key).one_or_none()
    if lic is None:
        return AuthorityVerdict(status=STATUS_INVALID)
    plan = lic.plan if lic.plan in PLANS else DEFAULT_PLAN
    if lic.status in ("suspended", "cancelled"):
        return AuthorityVerdict(status=STATUS_SUSPENDED, plan=plan, expires_at=lic.expires_at)
    if lic.expires_at is not None and lic.expires_at < now:
        return AuthorityVerdict(status=STATUS_EXPIRED, plan=plan, expires_at=lic.expires_at)
    return AuthorityVerdict(
        status=STATUS_ACTIVE,
        plan=plan,
        features=plan_features(plan, lic.addons()),
        expires_at=lic.expires_at,
    )


class DatabaseLicenseAuthority:
    """Authority backed by the platform's `issued_licenses` table."""

    def __init__(self, session_factory: sessionmaker, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def check(self, license_key: str) -> AuthorityVerdict:
        with self._session_factory() as s:
            return resolve_issued_license(s, license_key, now=self._clock())


class LicenseValidator:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        authority: LicenseAuthority | None,
        freshness: timedelta,
        clock: Callable[[], datetime] = utcnow,
        configured_key: str = "",
    ) -> None:
        self._session_factory = session_factory
        self._authority = authority
        self._freshness = freshness
        self._clock = clock
        self._configured_key = configured_key.strip()
        self._cached: LicenseInfo | None = None
        self._loaded = False
        self._lock = threading.Lock()

    def get_license_info(self) -> LicenseInfo:
        with self._lock:
            self._ensure_loaded()
            key = self._current_key()
            cached = self._cached
            if cached is not None and cached.key == key and self._is_fresh(cached):
                return cached
            return self._refresh_locked(key)

    def refresh(self) -> LicenseInfo:
        """Revalidate now, ignoring the freshness window."""
        with self._lock:
            self._ensure_loaded()
            return self._refresh_locked(self._current_key())

    def _current_key(self) -> str | None:
        if self._configured_key:
            return self._configured_key
        return self._cached.key if self._cached else None

    def _is_fresh(self, info: LicenseInfo) -> bool:
        if info.last_check is None:
            return False
        return self._clock() - info.last_check <= self._freshness

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        with self._session_factory() as s:
            row = s.get(LicenseState, _STATE_ID)
            if row is not None:
                self._cached = LicenseInfo(
                    key=row.license_key,
                    plan=row.plan,
                    status=row.status if row.status in LICENSE_STATUSES else STATUS_INVALID,
                    last_check=row.last_check,
                    features=_split_features(row.features),
                )
        self._loaded = True

    def _refresh_locked(self, key: str | None) -> LicenseInfo:
        if not key:
            info = LicenseInfo(key=None, plan=DEFAULT_PLAN, status=STATUS_INVALID, last_check=None)
            self._cached = info
            return info
        if self._authority is None:
            logger.warning("No licensing authority configured; license %s not validated", mask_license_key(key))
            return self._fallback(key)
        try:
            verdict = self._authority.check(key)
        except LicenseValidationError as e:
            logger.warning("License validation failed for %s: %s", mask_license_key(key), e)
            return self._fallback(key)

        info = LicenseInfo(
            key=key,
            plan=verdict.plan,
            status=verdict.status,
            last_check=self._clock(),
            features=verdict.features,
        )
        self._persist(info)
        self._cached = info
        logger.info("License %s validated: status=%s plan=%s", mask_license_key(key), info.status, info.plan)
        return info

    def _fallback(self, key: str) -> LicenseInfo:
        cached = self._cached
        if cached is not None and cached.key == key and cached.last_check is not None:
            return cached
        info = LicenseInfo(key=key, plan=DEFAULT_PLAN, status=STATUS_INVALID, last_check=None)
        self._cached = info
        return info

    def _persist(self, info: LicenseInfo) -> None:
        with self._session_factory() as s:
            row = s.get(LicenseState, _STATE_ID)
            if row is None:
                row = LicenseState(id=_STATE_ID)
                s.add(row)
            row.license_key = info.key
            row.plan = info.plan
            row.status = info.status
            row.features = ",".join(sorted(info.features)) or None
            row.last_check = info.last_check
            row.updated_at = self._clock()
            s.commit()


def _split_features(raw: str | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    return frozenset(f.strip() for f in raw.split(",") if f.strip()) & frozenset(FEATURES)
