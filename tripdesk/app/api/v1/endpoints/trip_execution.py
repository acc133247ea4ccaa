"""
Driver Trip Execution API Endpoints.

Drivers start and complete the trips scheduled for them, reporting the
odometer and optionally their position.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status, Path

from tripdesk.app.models.trip_enums import BLOCKING_STATUSES
from tripdesk.app.models.trip_schedule import TripSchedule
from tripdesk.app.schemas.trip_schedule import ScheduleResponse, TripExecutionUpdate
from tripdesk.app.core.guards import require_driver
from tripdesk.app.domain.scheduling.lifecycle import ScheduleLifecycleManager
from tripdesk.app.api.v1.endpoints.trip_schedules import get_lifecycle_manager

router = APIRouter(prefix="/driver", tags=["Driver - Trip Execution"])


async def _own_schedule(manager: ScheduleLifecycleManager, schedule_id: int, current_user: dict) -> TripSchedule:
    schedule = await manager.get(schedule_id)
    if schedule.driver_id != current_user["user_id"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This trip is not assigned to you"
        )
    return schedule


@router.get("/trip-schedules", response_model=List[ScheduleResponse])
async def my_schedules(
    current_user: dict = Depends(require_driver),
    manager: ScheduleLifecycleManager = Depends(get_lifecycle_manager)
):
    """Upcoming and running trips of the calling driver."""
    schedules = await manager.list_schedules(driver_id=current_user["user_id"])
    return [s for s in schedules if s.status in BLOCKING_STATUSES]


@router.post("/trip-schedules/{schedule_id}/start", response_model=ScheduleResponse)
async def start_trip(
    payload: TripExecutionUpdate,
    schedule_id: int = Path(..., description="Schedule ID"),
    current_user: dict = Depends(require_driver),
    manager: ScheduleLifecycleManager = Depends(get_lifecycle_manager)
):
    """
    Start a trip (Driver only).

    Only a SCHEDULED trip assigned to the caller can be started.
    """
    await _own_schedule(manager, schedule_id, current_user)
    return await manager.start_trip(
        schedule_id,
        actor_id=current_user["user_id"],
        odometer=payload.odometer,
        latitude=payload.latitude,
        longitude=payload.longitude,
    )


@router.post("/trip-schedules/{schedule_id}/complete", response_model=ScheduleResponse)
async def complete_trip(
    payload: TripExecutionUpdate,
    schedule_id: int = Path(..., description="Schedule ID"),
    current_user: dict = Depends(require_driver),
    manager: ScheduleLifecycleManager = Depends(get_lifecycle_manager)
):
    """
    Complete a trip (Driver only).

    Only a STARTED trip can be completed; distance traveled is derived from
    the start and end odometer readings.
    """
    await _own_schedule(manager, schedule_id, current_user)
    return await manager.complete_trip(
        schedule_id,
        actor_id=current_user["user_id"],
        odometer=payload.odometer,
        latitude=payload.latitude,
        longitude=payload.longitude,
    )
