import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.reservehub.db import script_session
from app.reservehub.models import Permission, Role, User
from app.reservehub.permissions import PERMISSIONS, ROLE_DEFAULTS


def seed_only(*, database_url: str | None = None, app_scope: str | None = None) -> None:
    """
    Seed the capability registry, default roles and the admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@reservehub.app").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    app_scope = (app_scope or os.environ.get("APP_SCOPE") or "dashboard").strip().lower()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///reservehub.db").strip()

    with script_session(db_url) as s:
        perms: dict[str, Permission] = {}
        for key, name in PERMISSIONS.items():
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms[key] = p

        roles: dict[str, Role] = {}
        for role_key, (role_name, role_perms) in ROLE_DEFAULTS.items():
            role = s.query(Role).filter(Role.key == role_key).one_or_none()
            if not role:
                role = Role(key=role_key, name=role_name)
                s.add(role)
            for key in sorted(role_perms):
                if perms[key] not in role.permissions:
                    role.permissions.append(perms[key])
            roles[role_key] = role

        user = s.query(User).filter(User.email == admin_email, User.app_scope == app_scope).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                name="Administrator",
                password_hash=generate_password_hash(admin_password),
                app_scope=app_scope,
                is_active=True,
            )
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email} (scope={app_scope})")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
