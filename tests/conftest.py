from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from src.core.dependencies import get_db, get_outbox
from src.database import Base, seed_spots
from src.main import app
from src.models.session import ParkingSession
from src.models.user import User
from src.schemas.notification import Notification
from src.services.notification import NotificationOutbox, NotificationSender
from src.utils.constants import SessionStatus

TEST_DATABASE_URL = "sqlite+aiosqlite:///./test_parking.db"

# Each test runs on its own event loop, so connections must not outlive it
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
test_session_maker = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class RecordingSender(NotificationSender):
    def __init__(self):
        self.sent: list[Notification] = []

    async def deliver(self, notification: Notification) -> None:
        self.sent.append(notification)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with test_session_maker() as session:
        await seed_spots(session, 100)
        await session.commit()
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def session_factory(db_session: AsyncSession) -> async_sessionmaker[AsyncSession]:
    return test_session_maker


@pytest_asyncio.fixture
async def outbox() -> NotificationOutbox:
    return NotificationOutbox(RecordingSender())


@pytest_asyncio.fixture
async def users(db_session: AsyncSession) -> list[User]:
    people = [
        User(username="alice", full_name="Alice Smith", email="alice@example.com", phone="555-0101"),
        User(username="bob", full_name="Bob Jones", email="bob@example.com", phone="555-0102"),
        User(username="carol", full_name="Carol White", email="carol@example.com"),
    ]
    db_session.add_all(people)
    await db_session.commit()
    return people


@pytest_asyncio.fixture
async def make_session(
    db_session: AsyncSession, users: list[User]
) -> Callable[..., Awaitable[ParkingSession]]:
    """Insert a session row directly, bypassing the allocation rules."""

    async def _make(
        spot_id: int,
        start: datetime,
        hours: float = 4,
        status: SessionStatus = SessionStatus.PREORDER,
        user: User | None = None,
        **fields,
    ) -> ParkingSession:
        session = ParkingSession(
            spot_id=spot_id,
            user_id=(user or users[0]).id,
            placed_at=start - timedelta(days=1),
            estimated_start=start,
            estimated_end=start + timedelta(hours=hours),
            actual_start=start if status == SessionStatus.ACTIVE else None,
            is_preordered=status == SessionStatus.PREORDER,
            status=status,
            **fields,
        )
        db_session.add(session)
        await db_session.commit()
        return session

    return _make


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession, outbox: NotificationOutbox
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_outbox] = lambda: outbox

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
