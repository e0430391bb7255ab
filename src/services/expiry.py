import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.models.session import ParkingSession
from src.services import allocation
from src.services.notification import NotificationOutbox
from src.utils.constants import SessionStatus
from src.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


async def find_overdue_reservations(db: AsyncSession, now: datetime) -> list[int]:
    cutoff = now - timedelta(minutes=settings.grace_period_minutes)
    result = await db.execute(
        select(ParkingSession.id)
        .where(
            ParkingSession.status == SessionStatus.PREORDER,
            ParkingSession.estimated_start <= cutoff,
        )
        .order_by(ParkingSession.estimated_start)
    )
    return list(result.scalars().all())


async def run_expiry_tick(
    session_maker: async_sessionmaker[AsyncSession],
    outbox: NotificationOutbox,
    now: datetime | None = None,
) -> int:
    now = as_utc(now) if now else utcnow()

    async with session_maker() as db:
        overdue = await find_overdue_reservations(db, now)

    forfeited = 0
    for session_id in overdue:
        # One short transaction per row; a row activated or cancelled since the
        # scan is skipped by the conditional write inside forfeit().
        async with session_maker() as db:
            if await allocation.forfeit(db, outbox, session_id):
                forfeited += 1

    if forfeited:
        logger.info(
            f"Auto-cancellation completed: {forfeited} late reservation(s) forfeited "
            f"({len(overdue) - forfeited} already resolved)"
        )
    return forfeited
