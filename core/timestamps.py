"""UTC timestamp helpers.

Event timestamps, ``launched_at`` and envelope ``meta.timestamp`` all
come from here so every serialized time carries an explicit +00:00 offset.
"""

from datetime import datetime, timezone


def now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Current UTC time as ISO 8601 with a +00:00 offset."""
    return now().isoformat()
