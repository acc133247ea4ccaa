"""
Trip Request database model.

Trip requests are owned by the requests component. The scheduler only reads
them and flips status / linked_trip_id when a schedule claims or releases one.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from tripdesk.app.db.session import Base
from tripdesk.app.models.trip_enums import TripRequestStatus


class TripRequest(Base):
    """Standalone request for transportation."""
    __tablename__ = "trip_requests"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # What the requestor asked for
    destination = Column(String(255), nullable=False)
    purpose_id = Column(Integer, ForeignKey("trip_purposes.id"), nullable=True)
    job_card_id = Column(String(100), nullable=True)
    no_of_people = Column(Integer, nullable=False, default=1)
    map_link = Column(String(500), nullable=True)
    date_time = Column(DateTime(timezone=True), nullable=True)

    # Link state
    status = Column(Enum(TripRequestStatus), default=TripRequestStatus.PENDING, nullable=False, index=True)
    linked_trip_id = Column(Integer, ForeignKey("trip_schedules.id"), nullable=True, index=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<TripRequest(id={self.id}, status='{self.status.value}', linked_trip_id={self.linked_trip_id})>"
