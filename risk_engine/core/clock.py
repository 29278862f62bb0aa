"""
clock.py
--------
Time source for every window-based rule (24h / 12h / 2h).

Services receive a Clock instead of calling datetime.now() directly,
so tests can pin "now" and move it forward without sleeping.
"""

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock, always timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


system_clock = SystemClock()
