"""
Time windows for schedule conflict checks.

All times inside the scheduling domain are naive UTC datetimes; anything
timezone-aware is converted on the way in with ``to_utc_naive``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to naive UTC (None passes through)."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class TimeWindow:
    """
    A booking window [start, end].

    ``end=None`` means the window is open-ended and extends indefinitely
    to the right. Bounds are compared inclusively, so a trip ending at 12:00
    collides with one starting at 12:00.
    """
    start: datetime
    end: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "start", to_utc_naive(self.start))
        object.__setattr__(self, "end", to_utc_naive(self.end))
        if self.end is not None and self.end < self.start:
            raise ValueError("Window end must not be before window start")

    @property
    def is_open_ended(self) -> bool:
        return self.end is None

    def overlaps(self, other: "TimeWindow") -> bool:
        """Symmetric overlap test; an open end counts as +infinity."""
        starts_before_other_ends = other.end is None or self.start <= other.end
        ends_after_other_starts = self.end is None or self.end >= other.start
        return starts_before_other_ends and ends_after_other_starts

    def with_default_end(self, duration: timedelta) -> "TimeWindow":
        """Close an open window at start + duration; closed windows are returned unchanged."""
        if self.end is not None:
            return self
        return TimeWindow(self.start, self.start + duration)


def aggregate_window(destinations: Iterable) -> TimeWindow:
    """
    Derive a schedule's window from its destinations.

    start = earliest trip_start_time, end = latest trip_approx_arrival_time
    among destinations that set one (None when no destination does).
    Works on request schemas and ScheduleDestination rows alike.
    """
    starts = []
    arrivals = []
    for destination in destinations:
        starts.append(to_utc_naive(destination.trip_start_time))
        if destination.trip_approx_arrival_time is not None:
            arrivals.append(to_utc_naive(destination.trip_approx_arrival_time))

    if not starts:
        raise ValueError("At least one destination is required to compute a window")

    return TimeWindow(min(starts), max(arrivals) if arrivals else None)
