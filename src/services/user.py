from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import NotFoundError
from src.models.user import User
from src.schemas.user import UserResponse


async def lookup_user_id(db: AsyncSession, username: str) -> int:
    result = await db.execute(select(User.id).where(User.username == username))
    user_id = result.scalar_one_or_none()
    if user_id is None:
        raise NotFoundError("User not found")
    return user_id


async def lookup_user(db: AsyncSession, user_id: int) -> UserResponse:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")
    return UserResponse.model_validate(user)
