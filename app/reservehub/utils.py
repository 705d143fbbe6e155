from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso_or_none(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat() + "Z"


def safe_text(v: object) -> str:
    """Safely convert any value to a stripped string."""
    if v is None:
        return ""
    return str(v).strip()
