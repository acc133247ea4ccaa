"""
Trip Purpose database model.
"""

from sqlalchemy import Column, Integer, String, Boolean
from tripdesk.app.db.session import Base


class TripPurpose(Base):
    """Why a destination is visited (e.g. "Site inspection")."""
    __tablename__ = "trip_purposes"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(150), nullable=False)
    job_card_needed = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<TripPurpose(id={self.id}, name='{self.name}')>"
