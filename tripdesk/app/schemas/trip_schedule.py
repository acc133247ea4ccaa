"""
Trip schedule schemas.

Destination entries are a tagged union: a stop either links an existing
trip request or carries its own inline trip details. The variant is chosen
by the presence of request_id, and each variant forbids the other's fields,
so mixing the two is a validation error.
"""

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, model_validator
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from tripdesk.app.domain.scheduling.time_window import to_utc_naive
from tripdesk.app.models.trip_enums import ScheduleStatus


class _DestinationTiming(BaseModel):
    model_config = ConfigDict(extra="forbid")

    trip_start_time: datetime
    trip_approx_arrival_time: Optional[datetime] = None
    trip_purpose_time: Optional[int] = Field(None, ge=0, description="Minutes spent at the stop")

    @model_validator(mode="after")
    def arrival_not_before_start(self):
        if self.trip_approx_arrival_time is None:
            return self
        if to_utc_naive(self.trip_approx_arrival_time) < to_utc_naive(self.trip_start_time):
            raise ValueError("trip_approx_arrival_time must not be before trip_start_time")
        return self


class LinkedDestination(_DestinationTiming):
    """Stop serving an existing trip request."""
    kind: Literal["linked"] = "linked"
    request_id: int


class InlineDestination(_DestinationTiming):
    """Ad-hoc stop described inline."""
    kind: Literal["inline"] = "inline"
    destination_label: str = Field(..., min_length=1, max_length=255)
    purpose_id: int
    job_card_id: Optional[str] = Field(None, max_length=100)
    no_of_people: Optional[int] = Field(None, ge=1)
    map_link: Optional[str] = Field(None, max_length=500)


def _destination_kind(value: Any) -> str:
    if isinstance(value, dict):
        request_id = value.get("request_id")
    else:
        request_id = getattr(value, "request_id", None)
    return "linked" if request_id is not None else "inline"


DestinationEntry = Annotated[
    Union[
        Annotated[LinkedDestination, Tag("linked")],
        Annotated[InlineDestination, Tag("inline")],
    ],
    Discriminator(_destination_kind),
]


class ScheduleCreate(BaseModel):
    """Schema for creating a schedule."""
    driver_id: int
    vehicle_id: int
    destinations: List[DestinationEntry]


class ScheduleUpdate(BaseModel):
    """
    Partial update. Omitted fields stay unchanged; an empty destination list
    cancels the schedule.
    """
    driver_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    destinations: Optional[List[DestinationEntry]] = None
    status: Optional[ScheduleStatus] = None


class AvailabilityCheck(BaseModel):
    """Schema for an availability check."""
    driver_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    default_duration_hours: Optional[float] = Field(
        None, gt=0, description="Assumed trip length when end_time is omitted"
    )


class FleetAvailabilityCheck(BaseModel):
    """Schema for checking every driver and vehicle at once."""
    start_time: datetime
    end_time: Optional[datetime] = None
    default_duration_hours: Optional[float] = Field(None, gt=0)


class TripExecutionUpdate(BaseModel):
    """Odometer reading and position reported when a trip starts or ends."""
    odometer: float = Field(..., ge=0)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class DestinationResponse(BaseModel):
    """Schema for one stop of a schedule."""
    id: int
    sequence_number: int
    request_id: Optional[int]
    destination_label: Optional[str]
    purpose_id: Optional[int]
    job_card_id: Optional[str]
    no_of_people: Optional[int]
    map_link: Optional[str]
    trip_start_time: datetime
    trip_approx_arrival_time: Optional[datetime]
    trip_purpose_time: Optional[int]

    model_config = ConfigDict(from_attributes=True)


class ScheduleResponse(BaseModel):
    """Schema for schedule response."""
    id: int
    driver_id: int
    vehicle_id: int
    status: ScheduleStatus
    window_start: datetime
    window_end: Optional[datetime]
    is_active: bool
    created_by: int
    created_at: datetime
    updated_at: datetime
    cancelled_at: Optional[datetime]
    deleted_at: Optional[datetime]
    actual_start_time: Optional[datetime]
    actual_end_time: Optional[datetime]
    start_odometer: Optional[float]
    end_odometer: Optional[float]
    distance_traveled: Optional[float]
    destinations: List[DestinationResponse] = []

    model_config = ConfigDict(from_attributes=True)


class ConflictResponse(BaseModel):
    """One schedule colliding with the requested window."""
    schedule_id: int
    status: ScheduleStatus
    driver_id: int
    driver_name: Optional[str]
    vehicle_id: int
    vehicle_name: Optional[str]
    plate_number: Optional[str]
    window_start: datetime
    window_end: Optional[datetime]
    destinations: List[str]


class AvailabilityResponse(BaseModel):
    """Result of an availability check."""
    available: bool
    window_start: datetime
    window_end: Optional[datetime]
    conflicts: List[ConflictResponse]
    driver_conflicts: List[ConflictResponse]
    vehicle_conflicts: List[ConflictResponse]
    message: str


class ResourceAvailability(BaseModel):
    id: int
    name: str
    detail: Optional[str] = None  # phone for drivers, plate number for vehicles
    available: bool


class ResourceAvailabilitySummary(BaseModel):
    total: int
    available: int
    busy: int
    details: List[ResourceAvailability]


class FleetAvailabilityResponse(BaseModel):
    """Availability of every active driver and vehicle for one window."""
    window_start: datetime
    window_end: Optional[datetime]
    drivers: ResourceAvailabilitySummary
    vehicles: ResourceAvailabilitySummary


class AuditEntryResponse(BaseModel):
    """One entry of a schedule's history."""
    id: int
    action: str
    actor_id: Optional[int]
    meta_data: Optional[dict]
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)
