"""
Notification fan-out for schedule changes.

After a schedule change is committed, a short summary is pushed to three
audiences: the assigned driver, the requestors whose trip requests the
schedule serves, and operations staff (schedulers and admins). Delivery is
best effort: each audience is handled on its own, failures are logged and
never reach the caller, and nothing is retried.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tripdesk.app.core.config import settings
from tripdesk.app.db.session import get_session_factory
from tripdesk.app.models.enums import UserRole
from tripdesk.app.models.notification_settings import (
    NotificationEvent, UserNotificationSettings, default_settings_for_role
)
from tripdesk.app.models.trip_schedule import TripSchedule
from tripdesk.app.models.user import User
from tripdesk.app.services.push_delivery import DeliveryReport, PushDeliveryService, get_push_delivery
from tripdesk.app.domain.scheduling.destinations import describe_destinations, format_destination_summary

logger = logging.getLogger("tripdesk")


class NotificationTemplate(str, enum.Enum):
    """Kind of schedule change being announced."""
    SCHEDULED = "SCHEDULED"
    RESCHEDULED = "RESCHEDULED"
    CANCELLED = "CANCELLED"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class AudienceMessage:
    event_type: str  # Preference flag that must be enabled
    title: str
    body: str  # Formatted with date, summary and driver


DRIVER = "driver"
REQUESTORS = "requestors"
OPERATIONS = "operations"

MESSAGES: Dict[NotificationTemplate, Dict[str, AudienceMessage]] = {
    NotificationTemplate.SCHEDULED: {
        DRIVER: AudienceMessage(
            NotificationEvent.TRIP_SCHEDULED, "New Trip Scheduled",
            "Trip scheduled for {date}\n{summary}"),
        REQUESTORS: AudienceMessage(
            NotificationEvent.MY_REQUEST, "Trip Request Scheduled",
            "Your trip request has been scheduled for {date}.\n{summary}"),
        OPERATIONS: AudienceMessage(
            NotificationEvent.OPS_TRIP_SCHEDULED, "New Trip Scheduled",
            "Trip scheduled for {date}\n{summary}"),
    },
    NotificationTemplate.RESCHEDULED: {
        DRIVER: AudienceMessage(
            NotificationEvent.TRIP_SCHEDULE_UPDATED, "Trip Re-scheduled",
            "Your trip has been re-scheduled for {date}\n{summary}"),
        REQUESTORS: AudienceMessage(
            NotificationEvent.MY_REQUEST, "Trip Schedule Updated",
            "Your scheduled trip has been updated for {date}.\n{summary}"),
        OPERATIONS: AudienceMessage(
            NotificationEvent.OPS_TRIP_SCHEDULED, "Trip Re-scheduled",
            "Trip re-scheduled for {date}\n{summary}"),
    },
    NotificationTemplate.CANCELLED: {
        DRIVER: AudienceMessage(
            NotificationEvent.TRIP_SCHEDULE_UPDATED, "Trip Cancelled",
            "Your trip on {date} has been cancelled\n{summary}"),
        REQUESTORS: AudienceMessage(
            NotificationEvent.MY_REQUEST, "Trip Cancelled",
            "The trip scheduled for your request on {date} has been cancelled.\n{summary}"),
        OPERATIONS: AudienceMessage(
            NotificationEvent.OPS_TRIP_SCHEDULED, "Trip Cancelled",
            "Trip on {date} has been cancelled\n{summary}"),
    },
    NotificationTemplate.STARTED: {
        REQUESTORS: AudienceMessage(
            NotificationEvent.MY_REQUEST_TRIP_STARTED, "Trip Started",
            "{driver} has started your trip.\n{summary}"),
        OPERATIONS: AudienceMessage(
            NotificationEvent.OPS_DRIVER_TRIP_STARTED, "Driver Trip Started",
            "{driver} started the trip scheduled for {date}\n{summary}"),
    },
    NotificationTemplate.COMPLETED: {
        REQUESTORS: AudienceMessage(
            NotificationEvent.MY_REQUEST_TRIP_ENDED, "Trip Completed",
            "Your trip has been completed.\n{summary}"),
        OPERATIONS: AudienceMessage(
            NotificationEvent.OPS_DRIVER_TRIP_ENDED, "Driver Trip Ended",
            "{driver} completed the trip scheduled for {date}\n{summary}"),
    },
}


def format_trip_date(value: datetime) -> str:
    """e.g. "Mar 5, 2025 9:30 AM"."""
    hour = value.hour % 12 or 12
    return f"{value:%b} {value.day}, {value.year} {hour}:{value:%M} {value:%p}"


class NotificationPreferenceService:
    """Resolves which users want a given event and their device tokens."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_enabled_recipients(
        self,
        event_type: str,
        user_ids: Optional[Iterable[int]] = None,
        roles: Optional[Iterable[UserRole]] = None,
        exclude_user_ids: Iterable[int] = ()
    ) -> Dict[int, List[str]]:
        """
        Active users (by id and/or role) that enabled ``event_type``.

        Users without a settings row get their role defaults.

        Returns:
            Mapping of user id to device tokens; users without tokens are omitted
        """
        query = select(User).where(User.is_active == True)
        if user_ids is not None:
            user_ids = list(user_ids)
            if not user_ids:
                return {}
            query = query.where(User.id.in_(user_ids))
        if roles is not None:
            query = query.where(User.role.in_(list(roles)))
        excluded = [uid for uid in exclude_user_ids if uid is not None]
        if excluded:
            query = query.where(User.id.notin_(excluded))

        users = (await self.db.execute(query)).scalars().all()
        if not users:
            return {}

        result = await self.db.execute(
            select(UserNotificationSettings).where(
                UserNotificationSettings.user_id.in_([u.id for u in users]),
                UserNotificationSettings.is_active == True
            )
        )
        stored = {row.user_id: row for row in result.scalars().all()}

        recipients = {}
        for user in users:
            preferences = stored.get(user.id)
            if preferences is not None:
                enabled = preferences.is_enabled(event_type)
            else:
                defaults = default_settings_for_role(user.role)
                enabled = bool(defaults.get(NotificationEvent.MASTER_SWITCH)) and bool(defaults.get(event_type))
            tokens = [t for t in (user.fcm_tokens or []) if t]
            if enabled and tokens:
                recipients[user.id] = tokens
        return recipients


class NotificationFanout:
    """Builds and delivers the messages for one schedule change."""

    def __init__(self, session_factory: async_sessionmaker, delivery: PushDeliveryService):
        self.session_factory = session_factory
        self.delivery = delivery

    async def notify(
        self,
        schedule_id: int,
        template: NotificationTemplate,
        exclude_actor_id: Optional[int] = None
    ) -> Dict[str, DeliveryReport]:
        """
        Send the template's messages to every audience.

        Runs in its own session; the triggering request has already returned.

        Returns:
            Delivery report per audience that was reached
        """
        async with self.session_factory() as db:
            schedule = await db.get(TripSchedule, schedule_id)
            if schedule is None:
                logger.warning("Schedule vanished before notification", extra={"schedule_id": schedule_id})
                return {}

            views = (await describe_destinations(db, [schedule])).get(schedule.id, [])
            driver = await db.get(User, schedule.driver_id)
            requestor_ids = list(dict.fromkeys(v.requestor_id for v in views if v.requestor_id is not None))
            context = {
                "date": format_trip_date(schedule.window_start),
                "summary": format_destination_summary(views),
                "driver": driver.name if driver else "Driver",
            }
            data = {
                "type": f"trip_{template.value.lower()}",
                "tripId": schedule.id,
                "tripDate": schedule.window_start.isoformat(),
                "formattedTripDate": context["date"],
            }

            driver_id = schedule.driver_id
            preferences = NotificationPreferenceService(db)
            reports = {}
            for audience, message in MESSAGES[template].items():
                try:
                    recipients = await self._resolve(
                        preferences, audience, message.event_type, driver_id, requestor_ids, exclude_actor_id
                    )
                    if not recipients:
                        continue
                    tokens = [token for user_tokens in recipients.values() for token in user_tokens]
                    reports[audience] = await self.delivery.send(
                        tokens, message.title, message.body.format(**context), data
                    )
                    if reports[audience].invalid_tokens:
                        await self._prune_tokens(db, recipients, reports[audience].invalid_tokens)
                except Exception:
                    logger.exception(
                        "Notification audience failed",
                        extra={"schedule_id": schedule_id, "template": template.value, "audience": audience}
                    )
                    # Later audiences need a usable transaction
                    await db.rollback()
            return reports

    @staticmethod
    async def _resolve(
        preferences: NotificationPreferenceService,
        audience: str,
        event_type: str,
        driver_id: int,
        requestor_ids: List[int],
        exclude_actor_id: Optional[int]
    ) -> Dict[int, List[str]]:
        if audience == DRIVER:
            return await preferences.get_enabled_recipients(event_type, user_ids=[driver_id])
        if audience == REQUESTORS:
            return await preferences.get_enabled_recipients(event_type, user_ids=requestor_ids)
        return await preferences.get_enabled_recipients(
            event_type,
            roles=[UserRole(role) for role in settings.ops_notification_roles],
            exclude_user_ids=[exclude_actor_id],
        )

    @staticmethod
    async def _prune_tokens(db: AsyncSession, recipients: Dict[int, List[str]], invalid: List[str]) -> None:
        """Drop device tokens the gateway reported as unregistered."""
        invalid = set(invalid)
        for user_id, tokens in recipients.items():
            if not invalid.intersection(tokens):
                continue
            user = await db.get(User, user_id)
            user.fcm_tokens = [t for t in (user.fcm_tokens or []) if t not in invalid]
        await db.commit()


# Tasks still running, shared by every dispatcher so shutdown can wait for them
_pending: Set[asyncio.Task] = set()


class NotificationDispatcher:
    """Runs fan-out as detached asyncio tasks."""

    def __init__(self, fanout: NotificationFanout, tasks: Optional[Set[asyncio.Task]] = None):
        self.fanout = fanout
        self._tasks = _pending if tasks is None else tasks

    def dispatch(
        self,
        schedule_id: int,
        template: NotificationTemplate,
        exclude_actor_id: Optional[int] = None
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self.fanout.notify(schedule_id, template, exclude_actor_id),
            name=f"notify-{template.value.lower()}-{schedule_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Notification task failed", exc_info=exc, extra={"task": task.get_name()})

    async def drain(self) -> None:
        """Wait for every pending notification task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def drain_notifications() -> None:
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)


def get_notifier(session_factory: async_sessionmaker = Depends(get_session_factory)) -> NotificationDispatcher:
    """FastAPI dependency providing the notification dispatcher."""
    return NotificationDispatcher(NotificationFanout(session_factory, get_push_delivery()))
