from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as date_parser


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> Optional[datetime]:
    """
    Best-effort parse of portal timestamps into an aware UTC datetime.

    Handles values like:
    - "2024-01-01T00:00:00Z"
    - "2024-01-01T08:30:00.000+0000"
    - "01/26/2025 10:15 AM"

    Naive values are taken as UTC. Returns None when the value cannot be parsed.
    """
    s = (value or "").strip()
    if not s:
        return None
    try:
        dt = date_parser.parse(s, dayfirst=False, yearfirst=False)
    except (ValueError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
