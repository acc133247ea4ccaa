"""
Trip request link state.

A trip request is claimed by at most one schedule at a time:
status SCHEDULED with linked_trip_id set while claimed, PENDING with no link
once released. These helpers only flush; the lifecycle manager owns the
transaction and commits request and schedule changes together.
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tripdesk.app.core.exceptions import ConflictError, NotFoundError
from tripdesk.app.models.trip_enums import TripRequestStatus
from tripdesk.app.models.trip_request import TripRequest

logger = logging.getLogger("tripdesk")


class TripRequestLinker:
    """Reads trip requests and moves them between PENDING and SCHEDULED."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, request_id: int) -> TripRequest:
        """
        Load a trip request.

        Raises:
            NotFoundError: If the request does not exist or was deleted
        """
        result = await self.db.execute(
            select(TripRequest)
            .where(TripRequest.id == request_id, TripRequest.deleted_at.is_(None))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if not request:
            raise NotFoundError("Trip request", request_id)
        return request

    async def get_many(self, request_ids: Iterable[int]) -> Dict[int, TripRequest]:
        """Load several requests; any missing id raises NotFoundError."""
        requests = {}
        for request_id in request_ids:
            requests[request_id] = await self.get(request_id)
        return requests

    def ensure_linkable(self, request: TripRequest, schedule_id: Optional[int] = None) -> None:
        """
        Raise ConflictError unless the request may be claimed by schedule_id.

        A request already claimed by the same schedule is accepted.
        """
        if request.status == TripRequestStatus.CANCELLED:
            raise ConflictError(
                f"Trip request {request.id} has been cancelled",
                details={"request_id": request.id, "status": request.status.value}
            )
        if request.status == TripRequestStatus.SCHEDULED and (
            schedule_id is None or request.linked_trip_id != schedule_id
        ):
            raise ConflictError(
                f"Trip request {request.id} is already scheduled",
                details={"request_id": request.id, "linked_trip_id": request.linked_trip_id}
            )

    async def validate_linkable(self, request_ids: Iterable[int], schedule_id: Optional[int] = None) -> List[TripRequest]:
        requests = await self.get_many(request_ids)
        for request in requests.values():
            self.ensure_linkable(request, schedule_id)
        return list(requests.values())

    async def update_status(
        self,
        request_id: int,
        status: TripRequestStatus,
        linked_trip_id: Optional[int],
        need_status_check: bool = True
    ) -> TripRequest:
        """
        Set a request's status and link.

        Args:
            request_id: Trip request to update
            status: New status
            linked_trip_id: Claiming schedule, or None to release
            need_status_check: When False the request's current status is not
                checked, so a schedule can always release what it holds

        Raises:
            NotFoundError: If the request does not exist
            ConflictError: If the status check rejects the link
        """
        request = await self.get(request_id)
        if need_status_check and status == TripRequestStatus.SCHEDULED:
            self.ensure_linkable(request, linked_trip_id)

        request.status = status
        request.linked_trip_id = linked_trip_id
        await self.db.flush()
        return request

    async def link(self, request_ids: Iterable[int], schedule_id: int) -> None:
        for request_id in request_ids:
            await self.update_status(request_id, TripRequestStatus.SCHEDULED, schedule_id)

    async def unlink(self, request_ids: Iterable[int], schedule_id: int) -> List[int]:
        """
        Release requests held by a schedule back to PENDING.

        Requests cancelled by their owner keep their CANCELLED status and only
        lose the link. Requests that are gone or claimed by another schedule
        are skipped.

        Returns:
            Ids of the requests that were released
        """
        released = []
        for request_id in request_ids:
            try:
                request = await self.get(request_id)
            except NotFoundError:
                logger.warning("Linked trip request missing", extra={"request_id": request_id, "schedule_id": schedule_id})
                continue

            if request.linked_trip_id not in (None, schedule_id):
                logger.warning(
                    "Trip request linked to another schedule, not released",
                    extra={"request_id": request_id, "schedule_id": schedule_id, "linked_trip_id": request.linked_trip_id}
                )
                continue

            if request.status == TripRequestStatus.CANCELLED:
                request.linked_trip_id = None
                await self.db.flush()
                continue

            await self.update_status(request_id, TripRequestStatus.PENDING, None, need_status_check=False)
            released.append(request_id)
        return released
