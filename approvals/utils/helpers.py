"""Shared utility functions.

utcnow / as_utc:  timezone-aware timestamps (SQLite hands back naive values)
iso:              datetime → ISO string or None
current_user:     acting user from the X-User request header
parse_json_body:  request body as a dict, never None
"""
import logging
from datetime import datetime, timezone

from flask import has_request_context, request

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def current_user(default: str = "system") -> str:
    """Acting user for the current request.

    The gateway in front of this service authenticates the caller and
    forwards the identity in ``X-User``; outside a request the *default*
    actor is used.
    """
    if not has_request_context():
        return default
    return (request.headers.get("X-User") or "").strip() or default


def parse_json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
