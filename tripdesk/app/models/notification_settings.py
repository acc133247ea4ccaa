"""
User notification preference model.

Each user holds a flat dict of boolean flags, one per event type, plus the
global "receiveNotification" switch. Users without a row fall back to the
defaults for their role.
"""

from sqlalchemy import Column, Integer, ForeignKey, Boolean, JSON
from tripdesk.app.db.session import Base
from tripdesk.app.models.enums import UserRole


class NotificationEvent:
    """Preference flag names for schedule-related events."""
    MASTER_SWITCH = "receiveNotification"

    # Driver
    TRIP_SCHEDULED = "receiveTripScheduledNotification"
    TRIP_SCHEDULE_UPDATED = "receiveTripScheduleUpdatedNotification"

    # Requestor
    MY_REQUEST = "receiveMyRequestNotification"
    MY_REQUEST_TRIP_STARTED = "receiveMyRequestTripStarted"
    MY_REQUEST_TRIP_ENDED = "receiveMyRequestTripEnded"

    # Operations
    OPS_TRIP_SCHEDULED = "receiveTripScheduledNotifications"
    OPS_DRIVER_TRIP_STARTED = "receiveDriverTripStarted"
    OPS_DRIVER_TRIP_ENDED = "receiveDriverTripEnded"


_OPS_DEFAULTS = {
    NotificationEvent.MASTER_SWITCH: True,
    NotificationEvent.OPS_TRIP_SCHEDULED: True,
    NotificationEvent.OPS_DRIVER_TRIP_STARTED: True,
    NotificationEvent.OPS_DRIVER_TRIP_ENDED: True,
}

_REQUESTOR_DEFAULTS = {
    NotificationEvent.MASTER_SWITCH: True,
    NotificationEvent.MY_REQUEST: True,
    NotificationEvent.MY_REQUEST_TRIP_STARTED: True,
    NotificationEvent.MY_REQUEST_TRIP_ENDED: True,
}

_DRIVER_DEFAULTS = {
    NotificationEvent.MASTER_SWITCH: True,
    NotificationEvent.TRIP_SCHEDULED: True,
    NotificationEvent.TRIP_SCHEDULE_UPDATED: True,
}


def default_settings_for_role(role: UserRole) -> dict:
    if role in (UserRole.SCHEDULER, UserRole.ADMIN, UserRole.SUPER_ADMIN):
        return dict(_OPS_DEFAULTS)
    if role == UserRole.DRIVER:
        return dict(_DRIVER_DEFAULTS)
    return dict(_REQUESTOR_DEFAULTS)


class UserNotificationSettings(Base):
    """Per-user notification flags."""
    __tablename__ = "user_notification_settings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    settings = Column(JSON, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    def is_enabled(self, event_type: str) -> bool:
        flags = self.settings or {}
        return bool(flags.get(NotificationEvent.MASTER_SWITCH)) and bool(flags.get(event_type))

    def __repr__(self):
        return f"<UserNotificationSettings(user_id={self.user_id})>"
