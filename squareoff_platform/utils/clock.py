#!/usr/bin/env python3
"""
VENUE CLOCK
===========

Every exit-time comparison happens in the trading venue's local time zone,
never in the host's. Persisted timestamps are UTC ISO-8601 strings so that
string ordering in sqlite matches time ordering.
"""

import re
from datetime import date, datetime, time as dtime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_exit_time(value: str) -> Tuple[int, int]:
    """Parse 'HH:MM' into (hour, minute). Raises ValueError."""
    if not isinstance(value, str):
        raise ValueError(f"exit time must be a string, got {type(value).__name__}")
    m = _HHMM.match(value.strip())
    if not m:
        raise ValueError(f"exit time must be HH:MM, got {value!r}")
    return int(m.group(1)), int(m.group(2))


def to_utc_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        raise ValueError("naive datetime cannot be persisted")
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class VenueClock:
    """Wall clock pinned to the venue time zone."""

    def __init__(self, tz_name: str = "Asia/Kolkata"):
        self.tz_name = tz_name
        self.tz = ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def today(self) -> date:
        return self.now().date()

    def exit_datetime(self, for_date: date, exit_time: str) -> datetime:
        hour, minute = parse_exit_time(exit_time)
        return datetime.combine(for_date, dtime(hour, minute), tzinfo=self.tz)

    def seconds_until(self, target: datetime) -> float:
        return (target - self.now()).total_seconds()
