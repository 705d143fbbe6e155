from __future__ import annotations

from flask import Blueprint, abort, current_app, g, request

from app.reservehub.audit import record_event
from app.reservehub.db import db_session
from app.reservehub.models import User
from app.reservehub.permissions import PERMISSIONS, PERMISSION_KEYS, list_overrides, load_permissions, set_override
from app.reservehub.rbac import permission_required

bp = Blueprint("admin", __name__)


def _get_user_or_404(s, user_id: int) -> User:
    user = s.get(User, user_id)
    # Staff of another application are invisible here.
    if user is None or user.app_scope != current_app.config["APP_SCOPE"]:
        abort(404)
    return user


def _permissions_payload(s, user: User) -> dict:
    return {
        "userId": user.id,
        "roles": sorted(r.key for r in user.roles),
        "permissions": sorted(load_permissions(s, user.id)),
        "overrides": list_overrides(s, user.id),
    }


@bp.get("/api/permissions")
@permission_required("manage_staff")
def permission_catalog():
    return {"permissions": [{"key": k, "name": name} for k, name in PERMISSIONS.items()]}


@bp.get("/api/users/<int:user_id>/permissions")
@permission_required("manage_staff")
def user_permissions_get(user_id: int):
    s = db_session()
    return _permissions_payload(s, _get_user_or_404(s, user_id))


@bp.put("/api/users/<int:user_id>/permissions")
@permission_required("manage_staff")
def user_permissions_put(user_id: int):
    """
    Body: {"<capability>": true | false | null}. true grants, false revokes,
    null clears the override (back to role defaults).
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict) or not body:
        return {"error": "Invalid request body"}, 400
    unknown = sorted(k for k in body if k not in PERMISSION_KEYS)
    if unknown:
        return {"error": f"Unknown permissions: {', '.join(unknown)}"}, 400
    if any(v is not None and not isinstance(v, bool) for v in body.values()):
        return {"error": "Values must be true, false or null"}, 400

    s = db_session()
    user = _get_user_or_404(s, user_id)
    for capability, granted in body.items():
        set_override(s, user.id, capability, granted)
    principal = g.principal
    record_event(
        s,
        actor_id=principal.id,
        actor_email=principal.email,
        action="user.permissions_update",
        entity_type="User",
        entity_id=str(user.id),
        metadata=body,
    )
    s.commit()
    return _permissions_payload(s, user)
