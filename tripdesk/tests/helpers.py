"""
Shared test helpers.
"""

from datetime import datetime, timedelta

from tripdesk.app.core.jwt import create_access_token
from tripdesk.app.models.trip_enums import ScheduleStatus
from tripdesk.app.models.trip_schedule import ScheduleDestination, TripSchedule
from tripdesk.app.models.user import User

# Scheduling day used across tests
DAY = datetime(2025, 3, 5)


def at(hour: int, minute: int = 0, days: int = 0) -> datetime:
    """Naive UTC time on the test day."""
    return DAY + timedelta(days=days, hours=hour, minutes=minute)


class FakeNotifier:
    """Records dispatch calls instead of sending anything."""

    def __init__(self):
        self.calls = []

    def dispatch(self, schedule_id, template, exclude_actor_id=None):
        self.calls.append((schedule_id, template, exclude_actor_id))

    def templates_for(self, schedule_id):
        return [template for sid, template, _ in self.calls if sid == schedule_id]


def auth_headers(user: User) -> dict:
    token = create_access_token(data={"sub": user.email, "user_id": user.id, "role": user.role.value})
    return {"Authorization": f"Bearer {token}"}


async def make_schedule(
    db,
    driver_id,
    vehicle_id,
    start,
    end=None,
    status=None,
    created_by=None,
    label="Head office",
    purpose_id=None,
    request_id=None,
    is_active=True,
):
    """Insert a schedule directly, bypassing the lifecycle checks."""

    schedule = TripSchedule(
        driver_id=driver_id,
        vehicle_id=vehicle_id,
        status=status or ScheduleStatus.SCHEDULED,
        window_start=start,
        window_end=end,
        is_active=is_active,
        created_by=created_by or driver_id,
    )
    destination = ScheduleDestination(
        sequence_number=1,
        trip_start_time=start,
        trip_approx_arrival_time=end,
    )
    if request_id is not None:
        destination.request_id = request_id
    else:
        destination.destination_label = label
        destination.purpose_id = purpose_id
    schedule.destinations = [destination]
    db.add(schedule)
    await db.commit()
    return schedule
