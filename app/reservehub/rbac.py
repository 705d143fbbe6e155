from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, g, request

from app.reservehub.db import db_session
from app.reservehub.errors import Forbidden, Unauthenticated
from app.reservehub.permissions import ensure_known
from app.reservehub.sessions import Principal, SessionManager, cookie_name


def _session_manager() -> SessionManager:
    return current_app.extensions["session_manager"]


def require_session() -> Principal:
    """
    Validate the current request's session cookie against the store.
    Re-checked on every call; nothing is cached between guarded calls.
    """
    scope = current_app.config["APP_SCOPE"]
    raw_token = request.cookies.get(cookie_name(scope))
    try:
        principal = _session_manager().validate(db_session(), raw_token, scope)
    except Exception:
        # Fail closed on anything unexpected (DB down, corrupt row, ...).
        current_app.logger.exception("Session validation error; denying (request_id=%s)", getattr(g, "request_id", None))
        raise Unauthenticated()
    if principal is None:
        raise Unauthenticated()
    g.principal = principal
    return principal


def require_permission(capability: str) -> Principal:
    ensure_known(capability)
    principal = require_session()
    if capability not in principal.permissions:
        # Server-side only; the response body stays generic.
        g.missing_permission = capability
        raise Forbidden()
    return principal


def require_feature(feature: str) -> None:
    """Plan gate: deny unless the current license is valid and enables `feature`."""
    from app.reservehub.modules.licensing.service import LicenseValidator

    validator: LicenseValidator = current_app.extensions["license_validator"]
    try:
        info = validator.get_license_info()
    except Exception:
        current_app.logger.exception("License lookup error; denying feature=%s", feature)
        raise Forbidden()
    if not info.has_feature(feature):
        raise Forbidden()


def login_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        require_session()
        return fn(*args, **kwargs)

    return wrapped


def permission_required(capability: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    # Unknown capabilities fail at import time, not on the first request.
    ensure_known(capability)

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            require_permission(capability)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
