"""
Error taxonomy for the access layer.

Access denials carry a fixed status code and a generic public message; handlers
in create_app() turn them into JSON responses without echoing which check failed.
"""
from __future__ import annotations


class AccessDenied(Exception):
    status_code = 403
    public_message = "Forbidden"


class Unauthenticated(AccessDenied):
    """No session, or an expired / revoked / wrong-scope one."""

    status_code = 401
    public_message = "Not authenticated"


class Forbidden(AccessDenied):
    """Valid session that lacks the required capability or plan feature."""

    status_code = 403
    public_message = "Forbidden"


class Unauthorized(AccessDenied):
    """Shared-secret mismatch on a cron endpoint."""

    status_code = 401
    public_message = "Unauthorized"


class LicenseValidationError(RuntimeError):
    """The licensing authority could not be reached or gave an unusable answer."""


class DeliveryError(RuntimeError):
    """One email send failed. Recorded on the step, never raised to the scheduler."""
