from __future__ import annotations

from flask import Blueprint, abort, current_app, g, request

from app.reservehub.audit import record_event
from app.reservehub.db import db_session
from app.reservehub.modules.licensing.service import (
    STATUS_ACTIVE,
    STATUS_INVALID,
    LicenseValidator,
    resolve_issued_license,
)
from app.reservehub.rbac import permission_required
from app.reservehub.utils import iso_or_none, utcnow

bp = Blueprint("licensing", __name__)


def _validator() -> LicenseValidator:
    return current_app.extensions["license_validator"]


@bp.post("/api/license/validate")
def license_validate():
    """Platform-side authority endpoint; called by customer instances. Never echoes the key."""
    if current_app.config["APP_SCOPE"] != "platform":
        abort(404)

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return {"valid": False, "error": "Invalid request body"}, 400
    license_key = str(body.get("licenseKey") or "").strip()
    if not license_key:
        return {"valid": False, "error": "licenseKey is required"}, 400

    verdict = resolve_issued_license(db_session(), license_key, now=utcnow())
    if verdict.status == STATUS_INVALID:
        return {"valid": False, "status": verdict.status, "error": "Invalid license key"}, 401
    if verdict.status != STATUS_ACTIVE:
        return {"valid": False, "status": verdict.status, "plan": verdict.plan, "error": f"License {verdict.status}"}, 403
    return {
        "valid": True,
        "status": verdict.status,
        "plan": verdict.plan,
        "features": sorted(verdict.features),
        "expiresAt": iso_or_none(verdict.expires_at),
    }


@bp.get("/api/license")
@permission_required("manage_billing")
def license_info():
    return {"license": _validator().get_license_info().public_dict()}


@bp.post("/api/license/refresh")
@permission_required("manage_billing")
def license_refresh():
    principal = g.principal
    info = _validator().refresh()
    s = db_session()
    record_event(
        s,
        actor_id=principal.id,
        actor_email=principal.email,
        action="license.refresh",
        entity_type="License",
        metadata={"status": info.status, "plan": info.plan},
    )
    s.commit()
    return {"license": info.public_dict()}
