from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import async_session_maker
from src.services.notification import NotificationOutbox


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_outbox(request: Request) -> NotificationOutbox:
    return request.app.state.outbox


class PaginationParams:
    def __init__(
        self,
        page: Annotated[int, Query(ge=1)] = 1,
        limit: Annotated[int, Query(ge=1, le=100)] = 20,
    ):
        self.page = page
        self.limit = limit
        self.offset = (page - 1) * limit


# Type aliases for cleaner dependency injection
DB = Annotated[AsyncSession, Depends(get_db)]
Outbox = Annotated[NotificationOutbox, Depends(get_outbox)]
Pagination = Annotated[PaginationParams, Depends()]
