"""
Availability conflict detection.

Answers "is this driver and/or vehicle free during this window?" by looking
for other schedules that still hold the resource (active, not deleted,
SCHEDULED or STARTED) and whose window overlaps the requested one.
The check is read-only; callers that go on to book must hold the
BookingLock for the same resources across check and commit.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from tripdesk.app.core.config import settings
from tripdesk.app.core.exceptions import InvalidArgumentError
from tripdesk.app.models.enums import UserRole
from tripdesk.app.models.fleet_vehicle import FleetVehicle
from tripdesk.app.models.trip_enums import BLOCKING_STATUSES
from tripdesk.app.models.trip_schedule import TripSchedule
from tripdesk.app.models.user import User
from tripdesk.app.schemas.trip_schedule import (
    AvailabilityResponse, ConflictResponse, FleetAvailabilityResponse,
    ResourceAvailability, ResourceAvailabilitySummary
)
from tripdesk.app.domain.scheduling.destinations import describe_destinations
from tripdesk.app.domain.scheduling.time_window import TimeWindow

logger = logging.getLogger("tripdesk")


def _format_time(value: datetime) -> str:
    return value.strftime("%b %d, %Y %I:%M %p")


def _format_range(start: datetime, end: Optional[datetime]) -> str:
    if end is None:
        return f"from {_format_time(start)} until completed"
    return f"from {_format_time(start)} to {_format_time(end)}"


def format_conflict_message(
    driver_conflicts: Sequence[ConflictResponse],
    vehicle_conflicts: Sequence[ConflictResponse]
) -> str:
    """Human-readable explanation built from the first conflict of each kind."""
    messages = []

    if driver_conflicts:
        conflict = driver_conflicts[0]
        messages.append(
            f"Driver {conflict.driver_name or conflict.driver_id} is busy with trip to "
            f"{', '.join(conflict.destinations)} "
            f"{_format_range(conflict.window_start, conflict.window_end)}"
        )

    if vehicle_conflicts:
        conflict = vehicle_conflicts[0]
        messages.append(
            f"Vehicle {conflict.vehicle_name or conflict.vehicle_id} ({conflict.plate_number}) "
            f"is scheduled for trip to {', '.join(conflict.destinations)} "
            f"{_format_range(conflict.window_start, conflict.window_end)}"
        )

    return " and ".join(messages)


class ConflictDetector:
    """Finds schedules that collide with a requested booking."""

    def __init__(self, db: AsyncSession, default_duration: Optional[timedelta] = None):
        self.db = db
        self.default_duration = default_duration or timedelta(hours=settings.default_trip_window_hours)

    def resolve_window(
        self,
        window: TimeWindow,
        default_duration: Optional[timedelta] = None,
        open_ended: bool = False
    ) -> TimeWindow:
        """Apply the assumed trip length to a window without an end, unless open_ended."""
        if open_ended or not window.is_open_ended:
            return window
        return window.with_default_end(default_duration or self.default_duration)

    async def find_overlapping(
        self,
        window: TimeWindow,
        driver_id: Optional[int] = None,
        vehicle_id: Optional[int] = None,
        exclude_schedule_id: Optional[int] = None
    ) -> List[TripSchedule]:
        """
        Load blocking schedules of the driver or vehicle that overlap the window.

        Mirrors TimeWindow.overlaps: NULL window_end on either side means
        the window never closes.
        """
        query = select(TripSchedule).where(
            TripSchedule.is_active == True,
            TripSchedule.deleted_at.is_(None),
            TripSchedule.status.in_(BLOCKING_STATUSES),
            or_(TripSchedule.window_end.is_(None), TripSchedule.window_end >= window.start),
        )
        if window.end is not None:
            query = query.where(TripSchedule.window_start <= window.end)

        resource_filters = []
        if driver_id is not None:
            resource_filters.append(TripSchedule.driver_id == driver_id)
        if vehicle_id is not None:
            resource_filters.append(TripSchedule.vehicle_id == vehicle_id)
        query = query.where(or_(*resource_filters))

        if exclude_schedule_id is not None:
            query = query.where(TripSchedule.id != exclude_schedule_id)

        result = await self.db.execute(query.order_by(TripSchedule.window_start, TripSchedule.id))
        return list(result.scalars().all())

    async def check(
        self,
        window: TimeWindow,
        driver_id: Optional[int] = None,
        vehicle_id: Optional[int] = None,
        exclude_schedule_id: Optional[int] = None,
        default_duration: Optional[timedelta] = None,
        open_ended: bool = False
    ) -> AvailabilityResponse:
        """
        Check whether the driver and/or vehicle are free for the window.

        Args:
            window: Requested window; an open end gets the default trip length
            driver_id: Driver to check
            vehicle_id: Vehicle to check
            exclude_schedule_id: Schedule to ignore (the one being updated)
            default_duration: Per-call override of the assumed trip length
            open_ended: Keep an open end unbounded instead of defaulting it

        Returns:
            Every overlapping schedule, split by the resource it collides on

        Raises:
            InvalidArgumentError: If neither driver_id nor vehicle_id is given
        """
        if driver_id is None and vehicle_id is None:
            raise InvalidArgumentError("Either driver_id or vehicle_id is required", field="driver_id")

        window = self.resolve_window(window, default_duration, open_ended)
        schedules = await self.find_overlapping(window, driver_id, vehicle_id, exclude_schedule_id)
        conflicts = await self.describe_conflicts(schedules)

        driver_conflicts = [c for c in conflicts if driver_id is not None and c.driver_id == driver_id]
        vehicle_conflicts = [c for c in conflicts if vehicle_id is not None and c.vehicle_id == vehicle_id]

        if conflicts:
            logger.info(
                "Availability conflict",
                extra={
                    "driver_id": driver_id,
                    "vehicle_id": vehicle_id,
                    "conflicting_schedule_ids": [c.schedule_id for c in conflicts],
                }
            )
            message = format_conflict_message(driver_conflicts, vehicle_conflicts)
        else:
            message = "The requested time slot is available"

        return AvailabilityResponse(
            available=not conflicts,
            window_start=window.start,
            window_end=window.end,
            conflicts=conflicts,
            driver_conflicts=driver_conflicts,
            vehicle_conflicts=vehicle_conflicts,
            message=message,
        )

    async def describe_conflicts(self, schedules: Sequence[TripSchedule]) -> List[ConflictResponse]:
        """Attach driver, vehicle and destination names to conflicting schedules."""
        if not schedules:
            return []

        driver_ids = {s.driver_id for s in schedules}
        vehicle_ids = {s.vehicle_id for s in schedules}

        driver_result = await self.db.execute(select(User).where(User.id.in_(driver_ids)))
        drivers = {driver.id: driver for driver in driver_result.scalars().all()}
        vehicle_result = await self.db.execute(select(FleetVehicle).where(FleetVehicle.id.in_(vehicle_ids)))
        vehicles = {vehicle.id: vehicle for vehicle in vehicle_result.scalars().all()}
        destination_views = await describe_destinations(self.db, schedules)

        conflicts = []
        for schedule in schedules:
            driver = drivers.get(schedule.driver_id)
            vehicle = vehicles.get(schedule.vehicle_id)
            conflicts.append(ConflictResponse(
                schedule_id=schedule.id,
                status=schedule.status,
                driver_id=schedule.driver_id,
                driver_name=driver.name if driver else None,
                vehicle_id=schedule.vehicle_id,
                vehicle_name=vehicle.name if vehicle else None,
                plate_number=vehicle.plate_number if vehicle else None,
                window_start=schedule.window_start,
                window_end=schedule.window_end,
                destinations=[view.short_label() for view in destination_views.get(schedule.id, [])],
            ))
        return conflicts

    async def check_all(
        self,
        window: TimeWindow,
        default_duration: Optional[timedelta] = None
    ) -> FleetAvailabilityResponse:
        """
        Availability of every active driver and vehicle for one window.

        Available resources are listed first, then by name.
        """
        window = self.resolve_window(window, default_duration)

        driver_result = await self.db.execute(
            select(User).where(User.role == UserRole.DRIVER, User.is_active == True)
        )
        vehicle_result = await self.db.execute(
            select(FleetVehicle).where(FleetVehicle.is_active == True)
        )

        busy_query = select(TripSchedule.driver_id, TripSchedule.vehicle_id).where(
            TripSchedule.is_active == True,
            TripSchedule.deleted_at.is_(None),
            TripSchedule.status.in_(BLOCKING_STATUSES),
            or_(TripSchedule.window_end.is_(None), TripSchedule.window_end >= window.start),
        )
        if window.end is not None:
            busy_query = busy_query.where(TripSchedule.window_start <= window.end)
        busy_rows = (await self.db.execute(busy_query)).all()
        busy_drivers = {row.driver_id for row in busy_rows}
        busy_vehicles = {row.vehicle_id for row in busy_rows}

        drivers = [
            ResourceAvailability(id=d.id, name=d.name, detail=d.phone, available=d.id not in busy_drivers)
            for d in driver_result.scalars().all()
        ]
        vehicles = [
            ResourceAvailability(id=v.id, name=v.name, detail=v.plate_number, available=v.id not in busy_vehicles)
            for v in vehicle_result.scalars().all()
        ]

        return FleetAvailabilityResponse(
            window_start=window.start,
            window_end=window.end,
            drivers=_summarize(drivers),
            vehicles=_summarize(vehicles),
        )


def _summarize(resources: List[ResourceAvailability]) -> ResourceAvailabilitySummary:
    ordered = sorted(resources, key=lambda r: (not r.available, r.name.lower()))
    available = sum(1 for r in ordered if r.available)
    return ResourceAvailabilitySummary(
        total=len(ordered),
        available=available,
        busy=len(ordered) - available,
        details=ordered,
    )
