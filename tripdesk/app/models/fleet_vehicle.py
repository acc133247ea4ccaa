"""
Fleet Vehicle database model.

Vehicles are owned by the fleet records component; the scheduler only reads
them to confirm they exist and are active.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from tripdesk.app.db.session import Base


class FleetVehicle(Base):
    """Fleet Vehicle model."""
    __tablename__ = "fleet_vehicles"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    name = Column(String(150), nullable=False)
    plate_number = Column(String(50), unique=True, nullable=False, index=True)
    vehicle_type = Column(String(50), nullable=True)  # e.g., "Car", "Van", "Truck"

    is_active = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<FleetVehicle(id={self.id}, plate='{self.plate_number}')>"
