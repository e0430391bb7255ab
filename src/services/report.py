from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.models.session import ParkingSession
from src.models.spot import ParkingSpot
from src.schemas.report import SystemStatus
from src.services import availability
from src.utils.constants import SessionStatus
from src.utils.timeutils import as_utc, utcnow


async def get_system_status(db: AsyncSession, now: datetime | None = None) -> SystemStatus:
    now = as_utc(now) if now else utcnow()
    total_spots = settings.total_spots

    result = await db.execute(
        select(func.count(ParkingSpot.id)).where(
            ParkingSpot.id <= total_spots,
            ParkingSpot.is_occupied.is_(True),
        )
    )
    occupied_spots = result.scalar() or 0
    available_spots = max(0, total_spots - occupied_spots)

    availability_rate = (available_spots / total_spots * 100) if total_spots > 0 else 0

    result = await db.execute(
        select(func.count(ParkingSession.id)).where(
            ParkingSession.status == SessionStatus.PREORDER
        )
    )
    pending_reservations = result.scalar() or 0

    result = await db.execute(
        select(func.count(ParkingSession.id)).where(ParkingSession.status == SessionStatus.ACTIVE)
    )
    active_sessions = result.scalar() or 0

    result = await db.execute(
        select(func.count(ParkingSession.id)).where(
            ParkingSession.status == SessionStatus.ACTIVE,
            ParkingSession.is_late.is_(True),
        )
    )
    overdue_sessions = result.scalar() or 0

    # Would a standard booking placed right now at the minimum lead time pass?
    window_start = now + timedelta(hours=settings.min_reservation_lead_hours)
    window_end = window_start + timedelta(hours=settings.standard_booking_hours)
    reservations_open = await availability.meets_threshold(db, window_start, window_end)

    return SystemStatus(
        total_spots=total_spots,
        occupied_spots=occupied_spots,
        available_spots=available_spots,
        availability_rate=round(availability_rate, 2),
        pending_reservations=pending_reservations,
        active_sessions=active_sessions,
        overdue_sessions=overdue_sessions,
        reservations_open=reservations_open,
    )
