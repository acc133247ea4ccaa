"""
Destination entries of a schedule.

Turns validated destination schemas into ScheduleDestination rows and
resolves what each stop looks like to a human (label, purpose, requestor),
whether it is linked to a trip request or described inline.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tripdesk.app.models.trip_purpose import TripPurpose
from tripdesk.app.models.trip_request import TripRequest
from tripdesk.app.models.trip_schedule import ScheduleDestination, TripSchedule
from tripdesk.app.schemas.trip_schedule import InlineDestination, LinkedDestination
from tripdesk.app.domain.scheduling.time_window import to_utc_naive, utcnow


@dataclass(frozen=True)
class DestinationView:
    """Display data of one stop."""
    label: Optional[str]
    purpose_name: Optional[str]
    request_id: Optional[int]
    requestor_id: Optional[int]
    trip_start_time: datetime
    trip_approx_arrival_time: Optional[datetime]

    def summary_line(self) -> str:
        return f"• {self.label or 'Unknown destination'} - {self.purpose_name or 'Unspecified purpose'}"

    def short_label(self) -> str:
        label = self.label or "Unknown destination"
        return f"{label} ({self.purpose_name})" if self.purpose_name else label


def build_destination_rows(entries: Sequence, actor_id: int) -> List[ScheduleDestination]:
    """Create ScheduleDestination rows in visiting order."""
    rows = []
    for position, entry in enumerate(entries, start=1):
        row = ScheduleDestination(
            sequence_number=position,
            trip_start_time=to_utc_naive(entry.trip_start_time),
            trip_approx_arrival_time=to_utc_naive(entry.trip_approx_arrival_time),
            trip_purpose_time=entry.trip_purpose_time,
            destination_added_by=actor_id,
            destination_added_at=utcnow(),
        )
        if isinstance(entry, LinkedDestination):
            row.request_id = entry.request_id
        elif isinstance(entry, InlineDestination):
            row.destination_label = entry.destination_label
            row.purpose_id = entry.purpose_id
            row.job_card_id = entry.job_card_id
            row.no_of_people = entry.no_of_people
            row.map_link = entry.map_link
        else:
            raise TypeError(f"Unsupported destination entry: {type(entry).__name__}")
        rows.append(row)
    return rows


def linked_request_ids(entries: Iterable) -> List[int]:
    """Distinct request ids of linked entries, in visiting order."""
    ids = []
    for entry in entries:
        request_id = getattr(entry, "request_id", None)
        if request_id is not None and request_id not in ids:
            ids.append(request_id)
    return ids


async def describe_destinations(
    db: AsyncSession,
    schedules: Sequence[TripSchedule]
) -> Dict[int, List[DestinationView]]:
    """
    Resolve display data for every stop of the given schedules.

    Trip requests and purposes are loaded in one query each.

    Returns:
        Mapping of schedule id to its stops in visiting order
    """
    request_ids = set()
    purpose_ids = set()
    for schedule in schedules:
        for destination in schedule.destinations:
            if destination.request_id is not None:
                request_ids.add(destination.request_id)
            elif destination.purpose_id is not None:
                purpose_ids.add(destination.purpose_id)

    requests = {}
    if request_ids:
        result = await db.execute(select(TripRequest).where(TripRequest.id.in_(request_ids)))
        requests = {request.id: request for request in result.scalars().all()}
        purpose_ids.update(r.purpose_id for r in requests.values() if r.purpose_id is not None)

    purposes = {}
    if purpose_ids:
        result = await db.execute(select(TripPurpose).where(TripPurpose.id.in_(purpose_ids)))
        purposes = {purpose.id: purpose.name for purpose in result.scalars().all()}

    views = {}
    for schedule in schedules:
        schedule_views = []
        for destination in schedule.destinations:
            if destination.request_id is not None:
                request = requests.get(destination.request_id)
                label = request.destination if request else None
                purpose_name = purposes.get(request.purpose_id) if request else None
                requestor_id = request.created_by if request else None
            else:
                label = destination.destination_label
                purpose_name = purposes.get(destination.purpose_id)
                requestor_id = None
            schedule_views.append(DestinationView(
                label=label,
                purpose_name=purpose_name,
                request_id=destination.request_id,
                requestor_id=requestor_id,
                trip_start_time=destination.trip_start_time,
                trip_approx_arrival_time=destination.trip_approx_arrival_time,
            ))
        views[schedule.id] = schedule_views
    return views


def format_destination_summary(views: Iterable[DestinationView]) -> str:
    """One "• {destination} - {purpose}" line per stop."""
    return "\n".join(view.summary_line() for view in views)
