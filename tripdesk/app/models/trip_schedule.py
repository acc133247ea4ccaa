"""
Trip Schedule database models.

A schedule assigns one driver and one vehicle to an ordered list of
destinations. Its booking window is derived from the destinations and
stored on the row so conflict checks can filter in SQL.
"""

from sqlalchemy import Column, Integer, String, Float, ForeignKey, DateTime, Enum, Boolean, Index
from sqlalchemy.orm import relationship
from tripdesk.app.db.session import Base
from tripdesk.app.models.trip_enums import ScheduleStatus
from tripdesk.app.domain.scheduling.time_window import TimeWindow, utcnow


class TripSchedule(Base):
    """
    Trip Schedule model.

    Times are naive UTC. window_end is NULL when no destination has an
    approximate arrival time; such schedules block their driver and vehicle
    indefinitely until completed or cancelled.
    """
    __tablename__ = "trip_schedules"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Assignment
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("fleet_vehicles.id"), nullable=False, index=True)

    # Status
    status = Column(Enum(ScheduleStatus), default=ScheduleStatus.SCHEDULED, nullable=False, index=True)

    # Aggregate booking window
    window_start = Column(DateTime, nullable=False, index=True)
    window_end = Column(DateTime, nullable=True)

    # Soft delete / cancellation stamps
    is_active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Execution metadata
    start_odometer = Column(Float, nullable=True)
    end_odometer = Column(Float, nullable=True)
    distance_traveled = Column(Float, nullable=True)
    actual_start_time = Column(DateTime, nullable=True)
    actual_end_time = Column(DateTime, nullable=True)
    start_latitude = Column(Float, nullable=True)
    start_longitude = Column(Float, nullable=True)
    end_latitude = Column(Float, nullable=True)
    end_longitude = Column(Float, nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    destinations = relationship(
        "ScheduleDestination",
        order_by="ScheduleDestination.sequence_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_trip_schedules_driver_status", "driver_id", "status"),
        Index("ix_trip_schedules_vehicle_status", "vehicle_id", "status"),
    )

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.window_start, self.window_end)

    @property
    def linked_request_ids(self) -> list:
        """Request ids in visiting order, without duplicates."""
        seen = []
        for destination in self.destinations:
            if destination.request_id is not None and destination.request_id not in seen:
                seen.append(destination.request_id)
        return seen

    def __repr__(self):
        return f"<TripSchedule(id={self.id}, driver_id={self.driver_id}, vehicle_id={self.vehicle_id}, status='{self.status.value}')>"


class ScheduleDestination(Base):
    """
    One stop of a schedule.

    Either request_id is set (the stop serves an existing trip request) or the
    inline columns describe an ad-hoc stop; never both.
    """
    __tablename__ = "schedule_destinations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    schedule_id = Column(Integer, ForeignKey("trip_schedules.id"), nullable=False, index=True)
    sequence_number = Column(Integer, nullable=False)  # Visiting order (1, 2, 3, ...)

    # Linked stop
    request_id = Column(Integer, ForeignKey("trip_requests.id"), nullable=True, index=True)

    # Inline stop
    destination_label = Column(String(255), nullable=True)
    purpose_id = Column(Integer, ForeignKey("trip_purposes.id"), nullable=True)
    job_card_id = Column(String(100), nullable=True)
    no_of_people = Column(Integer, nullable=True)
    map_link = Column(String(500), nullable=True)

    # Timing
    trip_start_time = Column(DateTime, nullable=False)
    trip_approx_arrival_time = Column(DateTime, nullable=True)
    trip_purpose_time = Column(Integer, nullable=True)  # Minutes spent at the stop

    destination_added_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    destination_added_at = Column(DateTime, default=utcnow, nullable=True)

    @property
    def is_linked(self) -> bool:
        return self.request_id is not None

    def __repr__(self):
        return f"<ScheduleDestination(id={self.id}, schedule_id={self.schedule_id}, seq={self.sequence_number}, request_id={self.request_id})>"
