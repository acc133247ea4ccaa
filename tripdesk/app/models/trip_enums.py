"""
Trip scheduling enumerations.
"""

import enum


class ScheduleStatus(str, enum.Enum):
    """Trip schedule status enumeration."""
    SCHEDULED = "SCHEDULED"  # Driver and vehicle booked, not started
    STARTED = "STARTED"  # Driver has started the trip
    COMPLETED = "COMPLETED"  # Trip finished (terminal)
    CANCELLED = "CANCELLED"  # Trip cancelled (terminal)


# Statuses that still hold the driver and vehicle
BLOCKING_STATUSES = (ScheduleStatus.SCHEDULED, ScheduleStatus.STARTED)

TERMINAL_STATUSES = (ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED)

ALLOWED_TRANSITIONS = {
    ScheduleStatus.SCHEDULED: {ScheduleStatus.STARTED, ScheduleStatus.CANCELLED},
    ScheduleStatus.STARTED: {ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED},
    ScheduleStatus.COMPLETED: set(),
    ScheduleStatus.CANCELLED: set(),
}


class TripRequestStatus(str, enum.Enum):
    """Trip request status enumeration."""
    PENDING = "PENDING"  # Waiting to be absorbed into a schedule
    SCHEDULED = "SCHEDULED"  # Claimed by a schedule (linked_trip_id set)
    CANCELLED = "CANCELLED"  # Cancelled by the requestor
