import time

from flask import Blueprint, current_app

bp = Blueprint("routes", __name__)


@bp.get("/api/health")
def health():
    """Health + entitlement summary. The license key is masked."""
    license_info = current_app.extensions["license_validator"].get_license_info()
    started = current_app.extensions["started_at_monotonic"]
    return {
        "status": "ok",
        "version": current_app.config["APP_VERSION"],
        "uptime": round(time.monotonic() - started, 3),
        "license": license_info.public_dict(),
    }


@bp.get("/healthz")
def healthz():
    """
    Fast liveness check for the load balancer. No DB access, minimal overhead.
    """
    return "ok", 200
