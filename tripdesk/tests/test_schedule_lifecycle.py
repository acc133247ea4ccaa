"""
Schedule lifecycle tests: booking, re-scheduling, cancellation and the
trip state machine, together with the trip request link state.
"""

import pytest

from tripdesk.app.core.exceptions import (
    ConflictError, InvalidArgumentError, InvalidStateError, NotFoundError
)
from tripdesk.app.models.trip_enums import ScheduleStatus, TripRequestStatus
from tripdesk.app.schemas.trip_schedule import InlineDestination, LinkedDestination, ScheduleUpdate
from tripdesk.app.services.audit import AuditAction, get_schedule_history
from tripdesk.app.services.notification_service import NotificationTemplate
from tripdesk.tests.helpers import at, make_schedule


def linked(request, start, arrival=None):
    return LinkedDestination(request_id=request.id, trip_start_time=start, trip_approx_arrival_time=arrival)


def inline(label, purpose, start, arrival=None):
    return InlineDestination(
        destination_label=label, purpose_id=purpose.id,
        trip_start_time=start, trip_approx_arrival_time=arrival,
    )


async def reload(db, obj):
    await db.refresh(obj)
    return obj


async def book(manager, seed, destinations, driver=None, vehicle=None):
    return await manager.create(
        driver_id=(driver or seed.driver).id,
        vehicle_id=(vehicle or seed.van).id,
        destinations=destinations,
        actor_id=seed.scheduler.id,
    )


# ----------------------------------------------------------------------
# create
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_links_requests_and_aggregates_window(manager, db_session, seed, notifier):
    schedule = await book(manager, seed, [
        linked(seed.airport, at(9)),
        linked(seed.warehouse, at(11), at(12, 30)),
    ])

    assert schedule.status == ScheduleStatus.SCHEDULED
    assert schedule.window_start == at(9)
    assert schedule.window_end == at(12, 30)
    assert schedule.created_by == seed.scheduler.id
    assert [d.sequence_number for d in schedule.destinations] == [1, 2]
    assert schedule.linked_request_ids == [seed.airport.id, seed.warehouse.id]

    for request in (seed.airport, seed.warehouse):
        request = await reload(db_session, request)
        assert request.status == TripRequestStatus.SCHEDULED
        assert request.linked_trip_id == schedule.id

    assert notifier.calls == [(schedule.id, NotificationTemplate.SCHEDULED, seed.scheduler.id)]


@pytest.mark.asyncio
async def test_create_with_inline_destination(manager, seed):
    schedule = await book(manager, seed, [inline("Head office", seed.visit, at(9), at(10))])

    destination = schedule.destinations[0]
    assert destination.request_id is None
    assert destination.destination_label == "Head office"
    assert destination.purpose_id == seed.visit.id
    assert destination.destination_added_by == seed.scheduler.id
    assert schedule.linked_request_ids == []


@pytest.mark.asyncio
async def test_create_without_arrival_is_open_ended(manager, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9))])

    assert schedule.window_end is None

    # Blocks the driver until the trip is completed or cancelled
    with pytest.raises(ConflictError):
        await book(manager, seed, [inline("Depot", seed.visit, at(20), at(21))], vehicle=seed.car)


@pytest.mark.asyncio
async def test_create_rejects_overlap(manager, db_session, seed, notifier):
    existing = await make_schedule(db_session, seed.driver.id, seed.car.id, at(10), at(12))

    with pytest.raises(ConflictError) as exc_info:
        await book(manager, seed, [linked(seed.airport, at(11), at(13))])

    error = exc_info.value
    assert [c["schedule_id"] for c in error.details["conflicts"]] == [existing.id]
    assert error.details["driver_conflict"] is True
    assert error.details["vehicle_conflict"] is False
    assert error.message.startswith("Driver Dan Driver is busy")

    # Nothing was claimed or announced
    request = await reload(db_session, seed.airport)
    assert request.status == TripRequestStatus.PENDING
    assert request.linked_trip_id is None
    assert notifier.calls == []


@pytest.mark.asyncio
async def test_create_requires_destinations(manager, seed):
    with pytest.raises(InvalidArgumentError):
        await book(manager, seed, [])


@pytest.mark.asyncio
async def test_create_rejects_unknown_or_inactive_resources(manager, seed):
    with pytest.raises(NotFoundError):
        await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))], driver=seed.retired_driver)
    with pytest.raises(NotFoundError):
        await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))], vehicle=seed.scrapped)
    # A requestor is not a driver
    with pytest.raises(NotFoundError):
        await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))], driver=seed.requestor)


@pytest.mark.asyncio
async def test_create_rejects_missing_request(manager, seed):
    with pytest.raises(NotFoundError):
        await manager.create(
            driver_id=seed.driver.id,
            vehicle_id=seed.van.id,
            destinations=[LinkedDestination(request_id=9999, trip_start_time=at(9))],
            actor_id=seed.scheduler.id,
        )


@pytest.mark.asyncio
async def test_create_rejects_already_scheduled_request(manager, seed):
    await book(manager, seed, [linked(seed.airport, at(9), at(10))])

    with pytest.raises(ConflictError, match="already scheduled"):
        await book(manager, seed, [linked(seed.airport, at(14), at(15))], driver=seed.other_driver, vehicle=seed.car)


@pytest.mark.asyncio
async def test_create_rejects_cancelled_request(manager, seed):
    with pytest.raises(ConflictError, match="cancelled"):
        await book(manager, seed, [linked(seed.withdrawn, at(9), at(10))])


@pytest.mark.asyncio
async def test_back_to_back_bookings_share_boundary(manager, seed):
    await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])

    # Inclusive bounds: a trip starting exactly when the previous one ends collides
    with pytest.raises(ConflictError):
        await book(manager, seed, [inline("Depot", seed.visit, at(10), at(11))])

    later = await book(manager, seed, [inline("Depot", seed.visit, at(10, 1), at(11))])
    assert later.status == ScheduleStatus.SCHEDULED


@pytest.mark.asyncio
async def test_create_writes_audit_entry(manager, db_session, seed):
    schedule = await book(manager, seed, [linked(seed.airport, at(9), at(10))])

    history = await get_schedule_history(db_session, schedule.id)

    assert [entry.action for entry in history] == [AuditAction.SCHEDULE_CREATED]
    assert history[0].actor_id == seed.scheduler.id
    assert history[0].meta_data["request_ids"] == [seed.airport.id]


# ----------------------------------------------------------------------
# update
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_update_removing_request_releases_it(manager, db_session, seed, notifier):
    schedule = await book(manager, seed, [
        linked(seed.airport, at(9), at(10)),
        linked(seed.warehouse, at(11), at(12, 30)),
    ])

    updated = await manager.update(
        schedule.id,
        ScheduleUpdate(destinations=[linked(seed.airport, at(9), at(10))]),
        actor_id=seed.scheduler.id,
    )

    assert updated.window_start == at(9)
    assert updated.window_end == at(10)
    assert updated.linked_request_ids == [seed.airport.id]

    warehouse = await reload(db_session, seed.warehouse)
    assert warehouse.status == TripRequestStatus.PENDING
    assert warehouse.linked_trip_id is None

    airport = await reload(db_session, seed.airport)
    assert airport.status == TripRequestStatus.SCHEDULED
    assert airport.linked_trip_id == schedule.id

    assert notifier.templates_for(schedule.id) == [
        NotificationTemplate.SCHEDULED, NotificationTemplate.RESCHEDULED
    ]


@pytest.mark.asyncio
async def test_update_adding_request_links_it(manager, db_session, seed):
    schedule = await book(manager, seed, [linked(seed.airport, at(9), at(10))])

    await manager.update(
        schedule.id,
        ScheduleUpdate(destinations=[
            linked(seed.airport, at(9), at(10)),
            linked(seed.harbour, at(10, 30), at(11)),
        ]),
        actor_id=seed.scheduler.id,
    )

    harbour = await reload(db_session, seed.harbour)
    assert harbour.status == TripRequestStatus.SCHEDULED
    assert harbour.linked_trip_id == schedule.id


@pytest.mark.asyncio
async def test_update_with_empty_destinations_cancels(manager, db_session, seed, notifier):
    schedule = await book(manager, seed, [
        linked(seed.airport, at(9), at(10)),
        linked(seed.warehouse, at(11), at(12)),
    ])

    updated = await manager.update(schedule.id, ScheduleUpdate(destinations=[]), actor_id=seed.admin.id)

    assert updated.status == ScheduleStatus.CANCELLED
    assert updated.cancelled_by == seed.admin.id
    assert updated.is_active is True
    for request in (seed.airport, seed.warehouse):
        request = await reload(db_session, request)
        assert request.status == TripRequestStatus.PENDING
        assert request.linked_trip_id is None
    assert notifier.templates_for(schedule.id)[-1] == NotificationTemplate.CANCELLED


@pytest.mark.asyncio
async def test_update_checks_conflicts_excluding_itself(manager, db_session, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(11))])
    await make_schedule(db_session, seed.other_driver.id, seed.car.id, at(12), at(14))

    # Shifting within its own window is fine
    moved = await manager.update(
        schedule.id,
        ScheduleUpdate(destinations=[inline("Depot", seed.visit, at(9, 30), at(11, 30))]),
        actor_id=seed.scheduler.id,
    )
    assert moved.window_start == at(9, 30)

    # Moving onto the other driver's slot and vehicle collides
    with pytest.raises(ConflictError):
        await manager.update(
            schedule.id,
            ScheduleUpdate(vehicle_id=seed.car.id, destinations=[inline("Depot", seed.visit, at(13), at(15))]),
            actor_id=seed.scheduler.id,
        )


@pytest.mark.asyncio
async def test_update_driver_change_checks_new_driver(manager, db_session, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(11))])
    schedule_id = schedule.id
    await make_schedule(db_session, seed.other_driver.id, seed.car.id, at(10), at(12))

    with pytest.raises(ConflictError):
        await manager.update(schedule_id, ScheduleUpdate(driver_id=seed.other_driver.id), actor_id=seed.scheduler.id)

    with pytest.raises(NotFoundError):
        await manager.update(schedule_id, ScheduleUpdate(driver_id=seed.retired_driver.id), actor_id=seed.scheduler.id)

    assert (await manager.get(schedule_id)).driver_id == seed.driver.id


@pytest.mark.asyncio
async def test_update_rejects_request_claimed_elsewhere(manager, db_session, seed):
    first = await book(manager, seed, [linked(seed.airport, at(9), at(10))])
    first_id = first.id
    second = await book(manager, seed, [linked(seed.harbour, at(14), at(15))])

    with pytest.raises(ConflictError, match="already scheduled"):
        await manager.update(
            second.id,
            ScheduleUpdate(destinations=[linked(seed.airport, at(14), at(15))]),
            actor_id=seed.scheduler.id,
        )

    airport = await reload(db_session, seed.airport)
    assert airport.linked_trip_id == first_id


@pytest.mark.asyncio
async def test_update_status_transition(manager, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])
    schedule_id = schedule.id

    with pytest.raises(InvalidStateError):
        await manager.update(schedule_id, ScheduleUpdate(status=ScheduleStatus.COMPLETED), actor_id=seed.scheduler.id)

    started = await manager.update(schedule_id, ScheduleUpdate(status=ScheduleStatus.STARTED), actor_id=seed.scheduler.id)
    assert started.status == ScheduleStatus.STARTED


@pytest.mark.asyncio
async def test_terminal_schedule_cannot_be_updated(manager, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])
    await manager.cancel(schedule.id, actor_id=seed.scheduler.id)

    with pytest.raises(InvalidStateError):
        await manager.update(
            schedule.id,
            ScheduleUpdate(destinations=[inline("Depot", seed.visit, at(15), at(16))]),
            actor_id=seed.scheduler.id,
        )


@pytest.mark.asyncio
async def test_update_missing_schedule(manager, seed):
    with pytest.raises(NotFoundError):
        await manager.update(4242, ScheduleUpdate(driver_id=seed.driver.id), actor_id=seed.scheduler.id)


# ----------------------------------------------------------------------
# cancel / delete
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_releases_requests_and_keeps_record(manager, db_session, seed, notifier):
    schedule = await book(manager, seed, [
        linked(seed.airport, at(9), at(10)),
        linked(seed.warehouse, at(11), at(12)),
    ])

    cancelled = await manager.cancel(schedule.id, actor_id=seed.admin.id)

    assert cancelled.status == ScheduleStatus.CANCELLED
    assert cancelled.is_active is True
    assert cancelled.cancelled_by == seed.admin.id
    assert cancelled.cancelled_at is not None
    for request in (seed.airport, seed.warehouse):
        request = await reload(db_session, request)
        assert request.status == TripRequestStatus.PENDING
        assert request.linked_trip_id is None
    assert notifier.templates_for(schedule.id)[-1] == NotificationTemplate.CANCELLED

    # Still readable for history
    assert (await manager.get(schedule.id)).status == ScheduleStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_frees_the_slot(manager, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])
    await manager.cancel(schedule.id, actor_id=seed.scheduler.id)

    rebooked = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])
    assert rebooked.id != schedule.id


@pytest.mark.asyncio
async def test_cancel_twice_is_invalid(manager, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])
    await manager.cancel(schedule.id, actor_id=seed.scheduler.id)

    with pytest.raises(InvalidStateError):
        await manager.cancel(schedule.id, actor_id=seed.scheduler.id)


@pytest.mark.asyncio
async def test_cancel_leaves_requests_cancelled_by_owner(manager, db_session, seed):
    schedule = await book(manager, seed, [linked(seed.airport, at(9), at(10))])
    airport = await reload(db_session, seed.airport)
    airport.status = TripRequestStatus.CANCELLED
    await db_session.commit()

    await manager.cancel(schedule.id, actor_id=seed.scheduler.id)

    airport = await reload(db_session, airport)
    assert airport.status == TripRequestStatus.CANCELLED
    assert airport.linked_trip_id is None


@pytest.mark.asyncio
async def test_delete_soft_deletes_and_releases(manager, db_session, seed, notifier):
    schedule = await book(manager, seed, [linked(seed.airport, at(9), at(10))])

    deleted = await manager.delete(schedule.id, actor_id=seed.admin.id)

    assert deleted.is_active is False
    assert deleted.deleted_by == seed.admin.id
    assert deleted.deleted_at is not None
    airport = await reload(db_session, seed.airport)
    assert airport.status == TripRequestStatus.PENDING
    assert airport.linked_trip_id is None
    assert notifier.templates_for(schedule.id)[-1] == NotificationTemplate.CANCELLED

    with pytest.raises(NotFoundError):
        await manager.get(schedule.id)
    with pytest.raises(NotFoundError):
        await manager.delete(schedule.id, actor_id=seed.admin.id)

    # The slot is free again
    await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])


@pytest.mark.asyncio
async def test_delete_completed_schedule_is_silent(manager, seed, notifier):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])
    await manager.start_trip(schedule.id, seed.driver.id, odometer=100)
    await manager.complete_trip(schedule.id, seed.driver.id, odometer=120)
    notifier.calls.clear()

    await manager.delete(schedule.id, actor_id=seed.admin.id)

    assert notifier.calls == []


# ----------------------------------------------------------------------
# trip execution
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_start_and_complete_trip(manager, seed, notifier):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])

    started = await manager.start_trip(schedule.id, seed.driver.id, odometer=1200.5, latitude=12.97, longitude=77.59)
    assert started.status == ScheduleStatus.STARTED
    assert started.start_odometer == 1200.5
    assert started.actual_start_time is not None
    assert started.start_latitude == 12.97

    completed = await manager.complete_trip(schedule.id, seed.driver.id, odometer=1250.5)
    assert completed.status == ScheduleStatus.COMPLETED
    assert completed.end_odometer == 1250.5
    assert completed.distance_traveled == 50.0
    assert completed.actual_end_time >= completed.actual_start_time

    assert notifier.templates_for(schedule.id) == [
        NotificationTemplate.SCHEDULED, NotificationTemplate.STARTED, NotificationTemplate.COMPLETED
    ]


@pytest.mark.asyncio
async def test_complete_without_start_is_invalid(manager, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])

    with pytest.raises(InvalidStateError):
        await manager.complete_trip(schedule.id, seed.driver.id, odometer=100)

    unchanged = await manager.get(schedule.id)
    assert unchanged.status == ScheduleStatus.SCHEDULED
    assert unchanged.end_odometer is None


@pytest.mark.asyncio
async def test_start_twice_is_invalid(manager, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])
    await manager.start_trip(schedule.id, seed.driver.id, odometer=100)

    with pytest.raises(InvalidStateError):
        await manager.start_trip(schedule.id, seed.driver.id, odometer=100)


@pytest.mark.asyncio
async def test_complete_rejects_odometer_below_start(manager, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])
    await manager.start_trip(schedule.id, seed.driver.id, odometer=500)

    with pytest.raises(InvalidArgumentError):
        await manager.complete_trip(schedule.id, seed.driver.id, odometer=499)


@pytest.mark.asyncio
async def test_cancelled_trip_cannot_start(manager, seed):
    schedule = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])
    await manager.cancel(schedule.id, actor_id=seed.scheduler.id)

    with pytest.raises(InvalidStateError):
        await manager.start_trip(schedule.id, seed.driver.id, odometer=100)


# ----------------------------------------------------------------------
# reads
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_schedules_filters(manager, seed):
    morning = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))])
    evening = await book(manager, seed, [inline("Depot", seed.visit, at(18), at(19))], vehicle=seed.car)
    other = await book(manager, seed, [inline("Depot", seed.visit, at(9), at(10))], driver=seed.other_driver, vehicle=seed.car)
    await manager.cancel(other.id, actor_id=seed.scheduler.id)

    by_driver = await manager.list_schedules(driver_id=seed.driver.id)
    assert [s.id for s in by_driver] == [morning.id, evening.id]

    by_vehicle = await manager.list_schedules(vehicle_id=seed.car.id, status=ScheduleStatus.SCHEDULED)
    assert [s.id for s in by_vehicle] == [evening.id]

    afternoon_on = await manager.list_schedules(start_from=at(12))
    assert [s.id for s in afternoon_on] == [evening.id]
