"""
Audit Log Database Model.

Records who changed which schedule, for history and support investigations.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from tripdesk.app.db.session import Base
from tripdesk.app.domain.scheduling.time_window import utcnow


class AuditLog(Base):
    """
    Audit log entry for a schedule change.

    Events logged:
    - SCHEDULE_CREATED / SCHEDULE_UPDATED
    - SCHEDULE_CANCELLED / SCHEDULE_DELETED
    - TRIP_STARTED / TRIP_COMPLETED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action
    actor_id = Column(Integer, index=True, nullable=True)

    # What happened, to which record
    action = Column(String(100), nullable=False, index=True)
    schedule_id = Column(Integer, index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_id}, schedule={self.schedule_id})>"
