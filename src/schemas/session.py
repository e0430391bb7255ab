from datetime import datetime

from pydantic import Field

from src.schemas.common import BaseSchema, TimestampSchema
from src.schemas.user import UserResponse
from src.utils.constants import ActivationOutcome, SessionStatus


class SessionResponse(TimestampSchema):
    id: int
    spot_id: int
    user_id: int
    placed_at: datetime
    estimated_start: datetime
    estimated_end: datetime
    actual_start: datetime | None = None
    actual_end: datetime | None = None
    is_preordered: bool
    is_late: bool
    is_extended: bool
    status: SessionStatus
    user: UserResponse | None = None


class SessionListResponse(BaseSchema):
    sessions: list[SessionResponse]
    total: int
    page: int
    limit: int


class ReservationCreate(BaseSchema):
    user_id: int
    start_time: datetime


class ReservationCreateResponse(BaseSchema):
    reservation: SessionResponse
    confirmation_code: int
    spot_id: int


class ActivationResponse(BaseSchema):
    session: SessionResponse
    outcome: ActivationOutcome
    minutes_late: int
    message: str


class CancelResponse(BaseSchema):
    session: SessionResponse
    message: str


class WalkInRequest(BaseSchema):
    user_id: int


class WalkInResponse(BaseSchema):
    session: SessionResponse
    parking_code: int
    spot_id: int
    allocated_hours: int
    full_window_available: bool


class ExtensionRequest(BaseSchema):
    additional_hours: int = Field(ge=1, le=4)


class ExtensionResponse(BaseSchema):
    session: SessionResponse
    additional_hours: int
    new_estimated_end: datetime


class ExitResponse(BaseSchema):
    session: SessionResponse
    is_late: bool
    duration_minutes: int
    message: str


class TimeSlot(BaseSchema):
    start_time: datetime
    end_time: datetime
    available_spots: int
    meets_threshold: bool
    within_booking_window: bool
    is_available: bool


class TimeSlotListResponse(BaseSchema):
    preferred_time: datetime
    slots: list[TimeSlot]
    threshold: int
