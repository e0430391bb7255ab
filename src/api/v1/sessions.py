from fastapi import APIRouter, status

from src.core.dependencies import DB, Outbox, Pagination
from src.schemas.session import (
    ExitResponse,
    ExtensionRequest,
    ExtensionResponse,
    SessionListResponse,
    SessionResponse,
    WalkInRequest,
    WalkInResponse,
)
from src.services import allocation

router = APIRouter(prefix="/sessions", tags=["Parking Sessions"])


@router.post("/walk-in", response_model=WalkInResponse, status_code=status.HTTP_201_CREATED)
async def walk_in(db: DB, data: WalkInRequest):
    return await allocation.walk_in(db, data.user_id)


@router.get("/active", response_model=SessionListResponse)
async def list_active_sessions(db: DB, pagination: Pagination):
    return await allocation.get_active_sessions(db, pagination.page, pagination.limit)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(db: DB, session_id: int):
    return await allocation.get_session(db, session_id)


@router.post("/{session_id}/extend", response_model=ExtensionResponse)
async def extend_session(db: DB, outbox: Outbox, session_id: int, data: ExtensionRequest):
    return await allocation.extend(db, outbox, session_id, data.additional_hours)


@router.post("/{session_id}/exit", response_model=ExitResponse)
async def exit_session(db: DB, outbox: Outbox, session_id: int):
    return await allocation.exit_session(db, outbox, session_id)
