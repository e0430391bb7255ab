from src.schemas.common import BaseSchema


class SystemStatus(BaseSchema):
    total_spots: int
    occupied_spots: int
    available_spots: int
    availability_rate: float
    pending_reservations: int
    active_sessions: int
    overdue_sessions: int
    reservations_open: bool
