from fastapi import APIRouter

from src.core.dependencies import DB, Outbox, Pagination
from src.schemas.session import SessionListResponse
from src.schemas.user import CodeRecoveryResponse, UserLookupResponse, UserResponse
from src.services import allocation
from src.services import user as user_service

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/lookup/{username}", response_model=UserLookupResponse)
async def lookup_user(db: DB, username: str):
    user_id = await user_service.lookup_user_id(db, username)
    return UserLookupResponse(id=user_id, username=username)


@router.post("/lookup/{username}/recover-code", response_model=CodeRecoveryResponse)
async def recover_parking_code(db: DB, outbox: Outbox, username: str):
    return await allocation.recover_parking_code(db, outbox, username)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(db: DB, user_id: int):
    return await user_service.lookup_user(db, user_id)


@router.get("/{user_id}/history", response_model=SessionListResponse)
async def get_user_history(db: DB, user_id: int, pagination: Pagination):
    return await allocation.get_history(db, user_id, pagination.page, pagination.limit)
