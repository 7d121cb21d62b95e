"""
Shared utility functions and singletons used across multiple modules.
"""

import uuid
from datetime import datetime, timedelta

from slowapi import Limiter
from slowapi.util import get_remote_address

# ── Shared rate-limiter instance ─────────────────────────────────────────
# Created here (not in main.py) so that route modules can import it
# without a circular dependency.
limiter = Limiter(key_func=get_remote_address)


def generate_id() -> str:
    """Return a UUID4 string used as the ``id`` of every stored document."""
    return str(uuid.uuid4())


def truncate_to_millis(value: datetime) -> datetime:
    """
    Drop sub-millisecond precision.

    MongoDB stores datetimes with millisecond precision; truncating before
    writing keeps values written by the app equal to the values read back,
    which the game-state compare-and-swap filters rely on.
    """
    return value - timedelta(microseconds=value.microsecond % 1000)


def utcnow() -> datetime:
    """Current naive UTC time, truncated to whole milliseconds."""
    return truncate_to_millis(datetime.utcnow())


def isoformat_or_none(value):
    """Serialize an optional datetime for JSON responses."""
    return value.isoformat() if value is not None else None
