import logging
import math
from datetime import datetime, timedelta

from sqlalchemy import ColumnElement, and_, func, not_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.models.session import ParkingSession
from src.models.spot import ParkingSpot
from src.schemas.session import TimeSlot, TimeSlotListResponse
from src.utils.constants import HOLDING_STATUSES, SessionStatus
from src.utils.timeutils import align_to_slot, as_utc, utcnow

logger = logging.getLogger(__name__)


def overlaps_window(start: datetime, end: datetime, model=ParkingSession) -> ColumnElement[bool]:
    """Sessions holding a spot at any point of ``[start, end)``."""
    return and_(
        model.status.in_(HOLDING_STATUSES),
        not_(
            or_(
                model.estimated_end <= start,
                model.estimated_start >= end,
            )
        ),
    )


def occupies_window(start: datetime, end: datetime, model=ParkingSession) -> ColumnElement[bool]:
    """Like :func:`overlaps_window`, but an active session keeps its spot until it exits."""
    return or_(
        overlaps_window(start, end, model),
        and_(model.status == SessionStatus.ACTIVE, model.estimated_start < end),
    )


def reservation_threshold() -> int:
    return math.ceil(settings.total_spots * settings.reservation_threshold)


async def conflicting_count(db: AsyncSession, start: datetime, end: datetime) -> int:
    result = await db.execute(
        select(func.count(ParkingSession.id)).where(overlaps_window(start, end))
    )
    return result.scalar() or 0


async def available_spots(db: AsyncSession, start: datetime, end: datetime) -> int:
    conflicts = await conflicting_count(db, start, end)
    return max(0, settings.total_spots - conflicts)


async def meets_threshold(db: AsyncSession, start: datetime, end: datetime) -> bool:
    available = await available_spots(db, start, end)
    required = reservation_threshold()
    if available >= required:
        logger.debug(f"Availability check: {available} spots free for {start:%H:%M}-{end:%H:%M}")
        return True
    logger.info(
        f"Availability check: only {available} spots free for {start:%H:%M}-{end:%H:%M} "
        f"(need {required})"
    )
    return False


async def find_free_spot(
    db: AsyncSession, start: datetime, end: datetime, include_overstays: bool = False
) -> int | None:
    """Lowest-numbered spot with no holding session overlapping ``[start, end)``.

    With ``include_overstays`` an active session keeps its spot past its
    estimated end.
    """
    busy = occupies_window if include_overstays else overlaps_window
    busy_spot_ids = select(ParkingSession.spot_id).where(busy(start, end))
    result = await db.execute(
        select(ParkingSpot.id)
        .where(
            ParkingSpot.id <= settings.total_spots,
            ParkingSpot.id.notin_(busy_spot_ids),
        )
        .order_by(ParkingSpot.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_maximum_extension(
    db: AsyncSession,
    spot_id: int,
    current_end: datetime,
    exclude_session_id: int | None = None,
) -> int:
    """Largest extension in whole hours that keeps the spot conflict-free, or 0."""
    for hours in range(settings.max_extension_hours, 0, -1):
        query = select(func.count(ParkingSession.id)).where(
            ParkingSession.spot_id == spot_id,
            overlaps_window(current_end, current_end + timedelta(hours=hours)),
        )
        if exclude_session_id is not None:
            query = query.where(ParkingSession.id != exclude_session_id)
        result = await db.execute(query)
        if (result.scalar() or 0) == 0:
            return hours
    return 0


def within_booking_window(start: datetime, now: datetime) -> bool:
    earliest = now + timedelta(hours=settings.min_reservation_lead_hours)
    latest = now + timedelta(days=settings.max_reservation_days_ahead)
    return earliest <= start <= latest


async def get_available_slots(
    db: AsyncSession, preferred_time: datetime, now: datetime | None = None
) -> TimeSlotListResponse:
    preferred_time = as_utc(preferred_time)
    now = as_utc(now) if now else utcnow()
    radius = timedelta(hours=settings.slot_search_radius_hours)
    booking = timedelta(hours=settings.standard_booking_hours)
    step = timedelta(minutes=settings.time_slot_minutes)
    required = reservation_threshold()

    slots = []
    current = align_to_slot(preferred_time - radius, settings.time_slot_minutes)
    last = preferred_time + radius
    while current <= last:
        end = current + booking
        available = await available_spots(db, current, end)
        meets = available >= required
        bookable = within_booking_window(current, now)
        has_spot = False
        if meets and bookable:
            has_spot = await find_free_spot(db, current, end) is not None
        slots.append(
            TimeSlot(
                start_time=current,
                end_time=end,
                available_spots=available,
                meets_threshold=meets,
                within_booking_window=bookable,
                is_available=meets and bookable and has_spot,
            )
        )
        current += step

    return TimeSlotListResponse(preferred_time=preferred_time, slots=slots, threshold=required)
