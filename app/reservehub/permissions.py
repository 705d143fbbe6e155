"""
Capability registry and permission resolution.

Capabilities are plain strings, but only keys declared in PERMISSIONS are accepted
anywhere a capability is checked or stored, so a typo fails loudly instead of
silently denying (or granting) forever.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.reservehub.models import Permission, RolePermission, UserPermissionOverride, UserRole
from app.reservehub.utils import utcnow

# key -> display name
PERMISSIONS: dict[str, str] = {
    # Core
    "view_dashboard": "View Dashboard",
    "manage_reservations": "Manage Reservations",
    "checkin_guests": "Check-in & Seat Guests",
    "manage_waitlist": "Manage Waitlist",
    "tonight_view": "Tonight View",
    # Operations
    "manage_schedule": "Manage Schedule",
    "manage_tables": "Manage Tables",
    "manage_menu": "Manage Menu",
    "manage_events": "Manage Events",
    "view_reports": "View Reports",
    "view_guests": "View Guest History",
    # Admin
    "manage_staff": "Manage Staff Accounts",
    "manage_settings": "Manage Settings",
    "manage_billing": "Manage Billing",
    "manage_integrations": "Manage Integrations",
    # Platform
    "manage_licenses": "Manage Licenses",
    "manage_email_sequences": "Manage Email Sequences",
}

PERMISSION_KEYS = frozenset(PERMISSIONS)

ROLE_DEFAULTS: dict[str, tuple[str, frozenset[str]]] = {
    "admin": ("Administrator", PERMISSION_KEYS),
    "manager": (
        "Manager",
        frozenset(
            {
                "view_dashboard",
                "manage_reservations",
                "checkin_guests",
                "manage_waitlist",
                "tonight_view",
                "manage_schedule",
                "manage_tables",
                "manage_menu",
                "manage_events",
                "view_reports",
                "view_guests",
            }
        ),
    ),
    "host": (
        "Host",
        frozenset({"view_dashboard", "checkin_guests", "manage_waitlist", "tonight_view"}),
    ),
}


class UnknownCapability(ValueError):
    pass


def ensure_known(capability: str) -> str:
    if capability not in PERMISSION_KEYS:
        raise UnknownCapability(f"Unknown capability: {capability!r}")
    return capability


def load_permissions(s: Session, user_id: int) -> frozenset[str]:
    """
    Resolve the effective capability set from the store.

    Uses explicit SELECTs rather than ORM relationships so a change committed by
    another request is seen even when this session already holds the User.
    """
    role_keys = s.execute(
        select(Permission.key)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .where(UserRole.user_id == user_id)
    ).scalars()
    effective = {k for k in role_keys if k in PERMISSION_KEYS}

    overrides = s.execute(
        select(UserPermissionOverride.permission_key, UserPermissionOverride.granted).where(
            UserPermissionOverride.user_id == user_id
        )
    ).all()
    for key, granted in overrides:
        if key not in PERMISSION_KEYS:
            continue
        if granted:
            effective.add(key)
        else:
            effective.discard(key)
    return frozenset(effective)


def set_override(s: Session, user_id: int, capability: str, granted: bool | None) -> None:
    """Grant, revoke, or (granted=None) clear a per-user override."""
    ensure_known(capability)
    row = s.get(UserPermissionOverride, (user_id, capability))
    if granted is None:
        if row is not None:
            s.delete(row)
        return
    if row is None:
        s.add(UserPermissionOverride(user_id=user_id, permission_key=capability, granted=granted))
    else:
        row.granted = granted
        row.updated_at = utcnow()


def list_overrides(s: Session, user_id: int) -> dict[str, bool]:
    rows = s.execute(
        select(UserPermissionOverride.permission_key, UserPermissionOverride.granted)
        .where(UserPermissionOverride.user_id == user_id)
        .order_by(UserPermissionOverride.permission_key)
    ).all()
    return {key: granted for key, granted in rows}
