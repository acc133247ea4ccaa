"""
Schedule lifecycle management.

Create, update, cancel and delete schedules while keeping the trip requests
they claim consistent, and run the SCHEDULED -> STARTED -> COMPLETED trip
state machine.

Every booking runs under the BookingLock of the driver, vehicle and trip
requests involved, from the conflict check until the commit, so two
concurrent bookings of the same resource cannot both pass the check.
Notifications are dispatched only after the commit and never affect the
result.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tripdesk.app.core.exceptions import (
    AppException, ConflictError, InternalError, InvalidArgumentError,
    InvalidStateError, NotFoundError
)
from tripdesk.app.models.enums import UserRole
from tripdesk.app.models.fleet_vehicle import FleetVehicle
from tripdesk.app.models.trip_enums import (
    ALLOWED_TRANSITIONS, BLOCKING_STATUSES, TERMINAL_STATUSES, ScheduleStatus
)
from tripdesk.app.models.trip_schedule import TripSchedule
from tripdesk.app.models.user import User
from tripdesk.app.schemas.trip_schedule import ScheduleUpdate
from tripdesk.app.services.audit import AuditAction, log_event
from tripdesk.app.services.notification_service import NotificationTemplate
from tripdesk.app.domain.scheduling.booking_lock import BookingLock, get_booking_lock, resource_keys
from tripdesk.app.domain.scheduling.conflict_detector import ConflictDetector
from tripdesk.app.domain.scheduling.destinations import build_destination_rows, linked_request_ids
from tripdesk.app.domain.scheduling.request_links import TripRequestLinker
from tripdesk.app.domain.scheduling.time_window import TimeWindow, aggregate_window, utcnow

logger = logging.getLogger("tripdesk")


class ScheduleLifecycleManager:
    """
    Orchestrates schedule changes.

    Args:
        db: Request-scoped database session
        notifier: Object with ``dispatch(schedule_id, template, exclude_actor_id)``;
            None disables notifications
        booking_lock: Per-resource lock; defaults to the process-wide one
    """

    RELOCK_ATTEMPTS = 3

    def __init__(self, db: AsyncSession, notifier=None, booking_lock: Optional[BookingLock] = None):
        self.db = db
        self.notifier = notifier
        self.booking_lock = booking_lock or get_booking_lock()
        self.detector = ConflictDetector(db)
        self.requests = TripRequestLinker(db)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def create(
        self,
        driver_id: int,
        vehicle_id: int,
        destinations: Sequence,
        actor_id: int
    ) -> TripSchedule:
        """
        Book a driver and vehicle for an ordered list of destinations.

        Args:
            driver_id: Driver to assign
            vehicle_id: Vehicle to assign
            destinations: LinkedDestination / InlineDestination entries in visiting order
            actor_id: User creating the schedule

        Returns:
            The created schedule (status SCHEDULED)

        Raises:
            InvalidArgumentError: If no destination is given
            NotFoundError: If the driver, vehicle or a linked request is missing
            ConflictError: If a request is already scheduled or the driver or
                vehicle is booked during the window
        """
        if not destinations:
            raise InvalidArgumentError("At least one destination is required", field="destinations")

        window = aggregate_window(destinations)
        request_ids = linked_request_ids(destinations)

        async with self.booking_lock.hold(resource_keys([driver_id], [vehicle_id], request_ids)):
            async with self._transaction("create"):
                await self._get_driver(driver_id)
                await self._get_vehicle(vehicle_id)
                await self.requests.validate_linkable(request_ids)
                await self._ensure_available(window, driver_id, vehicle_id)

                schedule = TripSchedule(
                    driver_id=driver_id,
                    vehicle_id=vehicle_id,
                    status=ScheduleStatus.SCHEDULED,
                    window_start=window.start,
                    window_end=window.end,
                    created_by=actor_id,
                )
                schedule.destinations = build_destination_rows(destinations, actor_id)
                self.db.add(schedule)
                await self.db.flush()

                await self.requests.link(request_ids, schedule.id)

        logger.info(
            "Schedule created",
            extra={"schedule_id": schedule.id, "driver_id": driver_id, "vehicle_id": vehicle_id, "actor_id": actor_id}
        )
        await self._audit(AuditAction.SCHEDULE_CREATED, actor_id, schedule.id, {
            "driver_id": driver_id,
            "vehicle_id": vehicle_id,
            "request_ids": request_ids,
        })
        self._notify(schedule.id, NotificationTemplate.SCHEDULED, actor_id)
        return schedule

    async def update(self, schedule_id: int, patch: ScheduleUpdate, actor_id: int) -> TripSchedule:
        """
        Apply a partial update to a schedule.

        Changing the driver, vehicle or destinations re-runs validation and
        the conflict check (ignoring the schedule itself). Requests dropped
        from the destination list are released, new ones are claimed. An
        empty destination list or status CANCELLED cancels the schedule.

        Raises:
            NotFoundError: If the schedule or a referenced entity is missing
            InvalidStateError: If the schedule is completed or cancelled, or
                the requested status transition is not allowed
            ConflictError: If the new assignment collides with another schedule
        """
        schedule = await self._get_schedule(schedule_id)
        self._ensure_editable(schedule)

        driver_id = patch.driver_id if patch.driver_id is not None else schedule.driver_id
        vehicle_id = patch.vehicle_id if patch.vehicle_id is not None else schedule.vehicle_id
        touched_requests = schedule.linked_request_ids + linked_request_ids(patch.destinations or [])
        keys = resource_keys(
            [schedule.driver_id, driver_id], [schedule.vehicle_id, vehicle_id], touched_requests
        )

        async with self.booking_lock.hold(keys):
            async with self._transaction("update"):
                # Reload under the lock; a concurrent update may have won the race
                previous_driver, previous_vehicle = schedule.driver_id, schedule.vehicle_id
                schedule = await self._get_schedule(schedule_id, refresh=True)
                self._ensure_editable(schedule)
                if (schedule.driver_id, schedule.vehicle_id) != (previous_driver, previous_vehicle):
                    raise ConflictError("Schedule was changed concurrently, please retry", details={"schedule_id": schedule_id})

                cancelling = patch.status == ScheduleStatus.CANCELLED or (
                    patch.destinations is not None and len(patch.destinations) == 0
                )
                if patch.status is not None and patch.status != schedule.status:
                    self._ensure_transition(schedule, patch.status)

                if cancelling:
                    await self._cancel_in_place(schedule, actor_id)
                else:
                    await self._apply_patch(schedule, patch, driver_id, vehicle_id, actor_id)

        action = AuditAction.SCHEDULE_CANCELLED if cancelling else AuditAction.SCHEDULE_UPDATED
        logger.info("Schedule updated", extra={"schedule_id": schedule.id, "actor_id": actor_id, "cancelled": cancelling})
        await self._audit(action, actor_id, schedule.id, patch.model_dump(mode="json", exclude_none=True))
        template = NotificationTemplate.CANCELLED if cancelling else NotificationTemplate.RESCHEDULED
        self._notify(schedule.id, template, actor_id)
        return schedule

    async def _apply_patch(
        self,
        schedule: TripSchedule,
        patch: ScheduleUpdate,
        driver_id: int,
        vehicle_id: int,
        actor_id: int
    ) -> None:
        resources_changed = (driver_id, vehicle_id) != (schedule.driver_id, schedule.vehicle_id)
        destinations_changed = patch.destinations is not None

        if driver_id != schedule.driver_id:
            await self._get_driver(driver_id)
        if vehicle_id != schedule.vehicle_id:
            await self._get_vehicle(vehicle_id)

        old_ids = schedule.linked_request_ids
        window = schedule.window
        added: List[int] = []
        removed: List[int] = []
        if destinations_changed:
            window = aggregate_window(patch.destinations)
            new_ids = linked_request_ids(patch.destinations)
            added = [i for i in new_ids if i not in old_ids]
            removed = [i for i in old_ids if i not in new_ids]
            await self.requests.get_many(i for i in new_ids if i not in added)
            await self.requests.validate_linkable(added, schedule.id)

        if resources_changed or destinations_changed:
            await self._ensure_available(window, driver_id, vehicle_id, exclude_schedule_id=schedule.id)

        schedule.driver_id = driver_id
        schedule.vehicle_id = vehicle_id
        if destinations_changed:
            schedule.destinations = build_destination_rows(patch.destinations, actor_id)
            schedule.window_start = window.start
            schedule.window_end = window.end
        if patch.status is not None:
            schedule.status = patch.status
        await self.db.flush()

        await self.requests.unlink(removed, schedule.id)
        await self.requests.link(added, schedule.id)

    async def cancel(self, schedule_id: int, actor_id: int) -> TripSchedule:
        """
        Cancel a schedule, keeping the record for history.

        Linked trip requests go back to PENDING.

        Raises:
            NotFoundError: If the schedule is missing or deleted
            InvalidStateError: If the schedule is already completed or cancelled
        """
        self._ensure_editable(await self._get_schedule(schedule_id))

        async with self._locked_schedule(schedule_id, "cancel") as schedule:
            self._ensure_editable(schedule)
            await self._cancel_in_place(schedule, actor_id)

        logger.info("Schedule cancelled", extra={"schedule_id": schedule.id, "actor_id": actor_id})
        await self._audit(AuditAction.SCHEDULE_CANCELLED, actor_id, schedule.id)
        self._notify(schedule.id, NotificationTemplate.CANCELLED, actor_id)
        return schedule

    async def delete(self, schedule_id: int, actor_id: int) -> TripSchedule:
        """
        Soft-delete a schedule from any state.

        Linked trip requests go back to PENDING and the schedule stops
        counting for availability.

        Raises:
            NotFoundError: If the schedule is missing or already deleted
        """
        async with self._locked_schedule(schedule_id, "delete") as schedule:
            was_blocking = schedule.status in BLOCKING_STATUSES
            await self.requests.unlink(schedule.linked_request_ids, schedule.id)
            schedule.is_active = False
            schedule.deleted_at = utcnow()
            schedule.deleted_by = actor_id

        logger.info("Schedule deleted", extra={"schedule_id": schedule.id, "actor_id": actor_id})
        await self._audit(AuditAction.SCHEDULE_DELETED, actor_id, schedule.id)
        if was_blocking:
            self._notify(schedule.id, NotificationTemplate.CANCELLED, actor_id)
        return schedule

    @asynccontextmanager
    async def _locked_schedule(self, schedule_id: int, operation: str):
        """
        Yield a fresh copy of the schedule inside a transaction, holding the
        keys of its driver, vehicle and linked requests.

        The keys come from an unlocked read. If a concurrent update moved the
        schedule onto resources outside them, the lock is taken again.
        """
        schedule = await self._get_schedule(schedule_id)
        for _ in range(self.RELOCK_ATTEMPTS):
            keys = self._schedule_keys(schedule)
            async with self.booking_lock.hold(keys):
                async with self._transaction(operation):
                    schedule = await self._get_schedule(schedule_id, refresh=True)
                    if set(self._schedule_keys(schedule)) <= set(keys):
                        yield schedule
                        return
            logger.info("Schedule changed while locking, retrying", extra={"schedule_id": schedule_id, "operation": operation})
        raise ConflictError("Schedule was changed concurrently, please retry", details={"schedule_id": schedule_id})

    @staticmethod
    def _schedule_keys(schedule: TripSchedule) -> List[str]:
        return resource_keys([schedule.driver_id], [schedule.vehicle_id], schedule.linked_request_ids)

    async def _cancel_in_place(self, schedule: TripSchedule, actor_id: int) -> None:
        await self.requests.unlink(schedule.linked_request_ids, schedule.id)
        schedule.status = ScheduleStatus.CANCELLED
        schedule.cancelled_at = utcnow()
        schedule.cancelled_by = actor_id
        await self.db.flush()

    # ------------------------------------------------------------------
    # Trip execution
    # ------------------------------------------------------------------

    async def start_trip(
        self,
        schedule_id: int,
        actor_id: int,
        odometer: float,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None
    ) -> TripSchedule:
        """
        Mark a SCHEDULED trip as STARTED and record the start reading.

        Raises:
            InvalidStateError: If the schedule is not SCHEDULED
        """
        if odometer is None:
            raise InvalidArgumentError("Odometer reading is required", field="odometer")

        schedule = await self._get_schedule(schedule_id)
        if schedule.status != ScheduleStatus.SCHEDULED:
            raise InvalidStateError(
                f"Cannot start a trip in {schedule.status.value} state",
                current_status=schedule.status.value
            )

        async with self._transaction("start_trip"):
            schedule.status = ScheduleStatus.STARTED
            schedule.actual_start_time = utcnow()
            schedule.start_odometer = odometer
            schedule.start_latitude = latitude
            schedule.start_longitude = longitude

        logger.info("Trip started", extra={"schedule_id": schedule.id, "driver_id": schedule.driver_id})
        await self._audit(AuditAction.TRIP_STARTED, actor_id, schedule.id, {"odometer": odometer})
        self._notify(schedule.id, NotificationTemplate.STARTED, actor_id)
        return schedule

    async def complete_trip(
        self,
        schedule_id: int,
        actor_id: int,
        odometer: float,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None
    ) -> TripSchedule:
        """
        Mark a STARTED trip as COMPLETED and record distance traveled.

        Raises:
            InvalidStateError: If the schedule is not STARTED
            InvalidArgumentError: If the end reading is below the start reading
        """
        if odometer is None:
            raise InvalidArgumentError("Odometer reading is required", field="odometer")

        schedule = await self._get_schedule(schedule_id)
        if schedule.status != ScheduleStatus.STARTED:
            raise InvalidStateError(
                f"Cannot complete a trip in {schedule.status.value} state",
                current_status=schedule.status.value
            )
        if schedule.start_odometer is not None and odometer < schedule.start_odometer:
            raise InvalidArgumentError(
                f"End odometer {odometer} is below start odometer {schedule.start_odometer}",
                field="odometer"
            )

        async with self._transaction("complete_trip"):
            schedule.status = ScheduleStatus.COMPLETED
            schedule.actual_end_time = utcnow()
            schedule.end_odometer = odometer
            schedule.end_latitude = latitude
            schedule.end_longitude = longitude
            if schedule.start_odometer is not None:
                schedule.distance_traveled = odometer - schedule.start_odometer

        logger.info(
            "Trip completed",
            extra={"schedule_id": schedule.id, "driver_id": schedule.driver_id, "distance": schedule.distance_traveled}
        )
        await self._audit(AuditAction.TRIP_COMPLETED, actor_id, schedule.id, {
            "odometer": odometer,
            "distance_traveled": schedule.distance_traveled,
        })
        self._notify(schedule.id, NotificationTemplate.COMPLETED, actor_id)
        return schedule

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, schedule_id: int) -> TripSchedule:
        return await self._get_schedule(schedule_id)

    async def list_schedules(
        self,
        status: Optional[ScheduleStatus] = None,
        driver_id: Optional[int] = None,
        vehicle_id: Optional[int] = None,
        start_from: Optional[datetime] = None,
        start_to: Optional[datetime] = None
    ) -> List[TripSchedule]:
        """Active schedules matching the filters, earliest first."""
        query = select(TripSchedule).where(TripSchedule.is_active == True)
        if status is not None:
            query = query.where(TripSchedule.status == status)
        if driver_id is not None:
            query = query.where(TripSchedule.driver_id == driver_id)
        if vehicle_id is not None:
            query = query.where(TripSchedule.vehicle_id == vehicle_id)
        if start_from is not None:
            query = query.where(TripSchedule.window_start >= TimeWindow(start_from).start)
        if start_to is not None:
            query = query.where(TripSchedule.window_start <= TimeWindow(start_to).start)

        result = await self.db.execute(query.order_by(TripSchedule.window_start, TripSchedule.id))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_schedule(self, schedule_id: int, refresh: bool = False) -> TripSchedule:
        query = select(TripSchedule).where(
            TripSchedule.id == schedule_id,
            TripSchedule.is_active == True,
            TripSchedule.deleted_at.is_(None),
        )
        if refresh:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        schedule = result.scalar_one_or_none()
        if not schedule:
            raise NotFoundError("Trip schedule", schedule_id)
        return schedule

    async def _get_driver(self, driver_id: int) -> User:
        result = await self.db.execute(
            select(User).where(User.id == driver_id).with_for_update()
        )
        driver = result.scalar_one_or_none()
        if not driver or not driver.is_active or driver.role != UserRole.DRIVER:
            raise NotFoundError("Driver", driver_id)
        return driver

    async def _get_vehicle(self, vehicle_id: int) -> FleetVehicle:
        result = await self.db.execute(
            select(FleetVehicle).where(FleetVehicle.id == vehicle_id).with_for_update()
        )
        vehicle = result.scalar_one_or_none()
        if not vehicle or not vehicle.is_active:
            raise NotFoundError("Vehicle", vehicle_id)
        return vehicle

    async def _ensure_available(
        self,
        window: TimeWindow,
        driver_id: int,
        vehicle_id: int,
        exclude_schedule_id: Optional[int] = None
    ) -> None:
        # A schedule without arrival times blocks until it is completed or cancelled
        result = await self.detector.check(
            window,
            driver_id=driver_id,
            vehicle_id=vehicle_id,
            exclude_schedule_id=exclude_schedule_id,
            open_ended=True,
        )
        if not result.available:
            raise ConflictError(
                result.message,
                details={
                    "conflicts": [c.model_dump(mode="json") for c in result.conflicts],
                    "driver_conflict": bool(result.driver_conflicts),
                    "vehicle_conflict": bool(result.vehicle_conflicts),
                }
            )

    @staticmethod
    def _ensure_editable(schedule: TripSchedule) -> None:
        if schedule.status in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Schedule is {schedule.status.value} and can no longer be changed",
                current_status=schedule.status.value
            )

    @staticmethod
    def _ensure_transition(schedule: TripSchedule, target: ScheduleStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[schedule.status]:
            raise InvalidStateError(
                f"Cannot move schedule from {schedule.status.value} to {target.value}",
                current_status=schedule.status.value
            )

    @asynccontextmanager
    async def _transaction(self, operation: str):
        """Commit on success; roll back on any error, wrapping database failures."""
        try:
            yield
            await self.db.commit()
        except AppException:
            await self.db.rollback()
            raise
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception("Schedule persistence failed", extra={"operation": operation})
            raise InternalError()

    async def _audit(self, action: str, actor_id: int, schedule_id: int, metadata: Optional[dict] = None) -> None:
        # The change is already committed; a failed audit write is only logged
        try:
            await log_event(self.db, action, actor_id=actor_id, schedule_id=schedule_id, metadata=metadata)
        except SQLAlchemyError:
            # Detach first so the rollback does not expire the returned schedule
            self.db.expunge_all()
            await self.db.rollback()
            logger.exception("Audit write failed", extra={"action": action, "schedule_id": schedule_id})

    def _notify(self, schedule_id: int, template: NotificationTemplate, actor_id: Optional[int]) -> None:
        if self.notifier is None:
            return
        self.notifier.dispatch(schedule_id, template, exclude_actor_id=actor_id)
