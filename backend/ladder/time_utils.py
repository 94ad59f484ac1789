"""UTC timestamps for database columns."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime.

    Columns are stored without an offset, so every timestamp written by the
    service goes through here.
    """

    return datetime.now(timezone.utc).replace(tzinfo=None)
