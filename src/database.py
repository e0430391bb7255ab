import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.database_url, echo=settings.debug)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


async def seed_spots(db: AsyncSession, total: int) -> int:
    """Create any missing spot rows with ids 1..total. Existing rows are left alone."""
    from src.models.spot import ParkingSpot

    result = await db.execute(select(ParkingSpot.id))
    existing = set(result.scalars().all())
    missing = [spot_id for spot_id in range(1, total + 1) if spot_id not in existing]
    db.add_all(ParkingSpot(id=spot_id, is_occupied=False) for spot_id in missing)
    await db.flush()
    return len(missing)


async def init_db() -> None:
    import src.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_maker() as db:
        created = await seed_spots(db, settings.total_spots)
        await db.commit()

    if created:
        logger.info(f"Initialized {created} parking spots (pool size {settings.total_spots})")
    else:
        logger.info(f"Parking spots already exist: {settings.total_spots} spots found")
