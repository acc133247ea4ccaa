"""
Trip Schedule API Endpoints.

Schedulers and admins book drivers and vehicles, re-schedule, cancel and
check availability. All business rules live in ScheduleLifecycleManager and
ConflictDetector; these handlers only translate HTTP to calls.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tripdesk.app.db.session import get_db
from tripdesk.app.core.exceptions import InvalidArgumentError
from tripdesk.app.core.guards import require_role
from tripdesk.app.models.enums import SCHEDULE_MANAGER_ROLES
from tripdesk.app.models.trip_enums import ScheduleStatus
from tripdesk.app.schemas.trip_schedule import (
    AuditEntryResponse, AvailabilityCheck, AvailabilityResponse,
    FleetAvailabilityCheck, FleetAvailabilityResponse,
    ScheduleCreate, ScheduleResponse, ScheduleUpdate
)
from tripdesk.app.services.audit import get_schedule_history
from tripdesk.app.services.notification_service import NotificationDispatcher, get_notifier
from tripdesk.app.domain.scheduling.booking_lock import BookingLock, get_booking_lock
from tripdesk.app.domain.scheduling.conflict_detector import ConflictDetector
from tripdesk.app.domain.scheduling.lifecycle import ScheduleLifecycleManager
from tripdesk.app.domain.scheduling.time_window import TimeWindow

router = APIRouter(prefix="/trip-schedules", tags=["Trip Schedules"])


def get_lifecycle_manager(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
    booking_lock: BookingLock = Depends(get_booking_lock)
) -> ScheduleLifecycleManager:
    return ScheduleLifecycleManager(db, notifier=notifier, booking_lock=booking_lock)


def _window(start_time: datetime, end_time: Optional[datetime]) -> TimeWindow:
    try:
        return TimeWindow(start_time, end_time)
    except ValueError as exc:
        raise InvalidArgumentError(str(exc), field="end_time")


def _duration(hours: Optional[float]) -> Optional[timedelta]:
    return timedelta(hours=hours) if hours is not None else None


@router.post("", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    payload: ScheduleCreate,
    current_user: dict = Depends(require_role(SCHEDULE_MANAGER_ROLES)),
    manager: ScheduleLifecycleManager = Depends(get_lifecycle_manager)
):
    """
    Book a driver and vehicle for one or more destinations.

    Linked trip requests become SCHEDULED. Returns 409 with the colliding
    schedules when the driver or vehicle is already booked.
    """
    return await manager.create(
        driver_id=payload.driver_id,
        vehicle_id=payload.vehicle_id,
        destinations=payload.destinations,
        actor_id=current_user["user_id"],
    )


@router.get("", response_model=List[ScheduleResponse])
async def list_schedules(
    status_filter: Optional[ScheduleStatus] = Query(None, alias="status"),
    driver_id: Optional[int] = Query(None),
    vehicle_id: Optional[int] = Query(None),
    start_from: Optional[datetime] = Query(None, description="Window starts at or after"),
    start_to: Optional[datetime] = Query(None, description="Window starts at or before"),
    current_user: dict = Depends(require_role(SCHEDULE_MANAGER_ROLES)),
    manager: ScheduleLifecycleManager = Depends(get_lifecycle_manager)
):
    return await manager.list_schedules(
        status=status_filter,
        driver_id=driver_id,
        vehicle_id=vehicle_id,
        start_from=start_from,
        start_to=start_to,
    )


@router.post("/check-availability", response_model=AvailabilityResponse)
async def check_availability(
    payload: AvailabilityCheck,
    current_user: dict = Depends(require_role(SCHEDULE_MANAGER_ROLES)),
    db: AsyncSession = Depends(get_db)
):
    """
    Check whether a driver and/or vehicle is free for a window.

    Without end_time the window is assumed to last default_duration_hours
    (4 hours unless given).
    """
    detector = ConflictDetector(db)
    return await detector.check(
        _window(payload.start_time, payload.end_time),
        driver_id=payload.driver_id,
        vehicle_id=payload.vehicle_id,
        default_duration=_duration(payload.default_duration_hours),
    )


@router.post("/check-all-availability", response_model=FleetAvailabilityResponse)
async def check_all_availability(
    payload: FleetAvailabilityCheck,
    current_user: dict = Depends(require_role(SCHEDULE_MANAGER_ROLES)),
    db: AsyncSession = Depends(get_db)
):
    """Availability of every active driver and vehicle for a window."""
    detector = ConflictDetector(db)
    return await detector.check_all(
        _window(payload.start_time, payload.end_time),
        default_duration=_duration(payload.default_duration_hours),
    )


@router.get("/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(
    schedule_id: int = Path(..., description="Schedule ID"),
    current_user: dict = Depends(require_role(SCHEDULE_MANAGER_ROLES)),
    manager: ScheduleLifecycleManager = Depends(get_lifecycle_manager)
):
    return await manager.get(schedule_id)


@router.get("/{schedule_id}/history", response_model=List[AuditEntryResponse])
async def get_history(
    schedule_id: int = Path(..., description="Schedule ID"),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(require_role(SCHEDULE_MANAGER_ROLES)),
    db: AsyncSession = Depends(get_db)
):
    """Audit trail of a schedule, most recent first."""
    return await get_schedule_history(db, schedule_id, limit=limit)


@router.patch("/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    payload: ScheduleUpdate,
    schedule_id: int = Path(..., description="Schedule ID"),
    current_user: dict = Depends(require_role(SCHEDULE_MANAGER_ROLES)),
    manager: ScheduleLifecycleManager = Depends(get_lifecycle_manager)
):
    """
    Re-schedule: change driver, vehicle, destinations or status.

    An empty destination list cancels the schedule.
    """
    return await manager.update(schedule_id, payload, actor_id=current_user["user_id"])


@router.post("/{schedule_id}/cancel", response_model=ScheduleResponse)
async def cancel_schedule(
    schedule_id: int = Path(..., description="Schedule ID"),
    current_user: dict = Depends(require_role(SCHEDULE_MANAGER_ROLES)),
    manager: ScheduleLifecycleManager = Depends(get_lifecycle_manager)
):
    return await manager.cancel(schedule_id, actor_id=current_user["user_id"])


@router.delete("/{schedule_id}", response_model=ScheduleResponse)
async def delete_schedule(
    schedule_id: int = Path(..., description="Schedule ID"),
    current_user: dict = Depends(require_role(SCHEDULE_MANAGER_ROLES)),
    manager: ScheduleLifecycleManager = Depends(get_lifecycle_manager)
):
    """Soft-delete a schedule; linked trip requests go back to PENDING."""
    return await manager.delete(schedule_id, actor_id=current_user["user_id"])
