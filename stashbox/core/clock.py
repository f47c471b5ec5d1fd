"""
Time helpers.

All timestamps handled by the engine are timezone-aware UTC. Some drivers
(SQLite) hand naive datetimes back; ensure_utc() normalizes them.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
