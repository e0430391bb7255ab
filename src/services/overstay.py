import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from src.models.session import ParkingSession
from src.services.notification import NotificationOutbox, build_notification
from src.utils.constants import NotificationType, SessionStatus
from src.utils.timeutils import as_utc, utcnow, whole_minutes

logger = logging.getLogger(__name__)


async def find_overstaying_sessions(db: AsyncSession, now: datetime) -> list[int]:
    result = await db.execute(
        select(ParkingSession.id)
        .where(
            ParkingSession.status == SessionStatus.ACTIVE,
            ParkingSession.estimated_end < now,
            ParkingSession.is_late.is_(False),
        )
        .order_by(ParkingSession.estimated_end)
    )
    return list(result.scalars().all())


async def flag_overstay(db: AsyncSession, session_id: int) -> bool:
    """Mark an active session late. Only the first caller for a session gets ``True``."""
    result = await db.execute(
        update(ParkingSession)
        .where(
            ParkingSession.id == session_id,
            ParkingSession.status == SessionStatus.ACTIVE,
            ParkingSession.is_late.is_(False),
        )
        .values(is_late=True)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        return False
    await db.commit()
    return True


async def run_overstay_tick(
    session_maker: async_sessionmaker[AsyncSession],
    outbox: NotificationOutbox,
    now: datetime | None = None,
) -> int:
    now = as_utc(now) if now else utcnow()

    async with session_maker() as db:
        overdue = await find_overstaying_sessions(db, now)

    flagged = 0
    for session_id in overdue:
        async with session_maker() as db:
            if not await flag_overstay(db, session_id):
                continue
            result = await db.execute(
                select(ParkingSession)
                .where(ParkingSession.id == session_id)
                .options(selectinload(ParkingSession.user))
            )
            session = result.scalar_one()

        flagged += 1
        minutes_overdue = whole_minutes(now - session.estimated_end)
        logger.warning(
            f"Late pickup detected: session {session_id} for user {session.user_id} "
            f"(spot {session.spot_id}) is {minutes_overdue} minutes overdue"
        )
        outbox.publish(
            build_notification(
                NotificationType.LATE_PICKUP, session, minutes_overdue=minutes_overdue
            )
        )

    if flagged:
        logger.info(f"Late pickup check completed: {flagged} overdue session(s) notified")
    return flagged
