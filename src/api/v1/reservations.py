from datetime import datetime

from fastapi import APIRouter, Query, status

from src.core.dependencies import DB, Outbox
from src.schemas.session import (
    ActivationResponse,
    CancelResponse,
    ReservationCreate,
    ReservationCreateResponse,
    TimeSlotListResponse,
)
from src.services import allocation
from src.services import availability as availability_service

router = APIRouter(prefix="/reservations", tags=["Reservations"])


@router.post("", response_model=ReservationCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_reservation(db: DB, outbox: Outbox, data: ReservationCreate):
    return await allocation.reserve(db, outbox, data.user_id, data.start_time)


@router.get("/slots", response_model=TimeSlotListResponse)
async def get_available_slots(db: DB, preferred_time: datetime = Query(...)):
    return await availability_service.get_available_slots(db, preferred_time)


@router.post("/{reservation_id}/activate", response_model=ActivationResponse)
async def activate_reservation(db: DB, outbox: Outbox, reservation_id: int):
    return await allocation.activate(db, outbox, reservation_id)


@router.post("/{reservation_id}/cancel", response_model=CancelResponse)
async def cancel_reservation(db: DB, outbox: Outbox, reservation_id: int):
    return await allocation.cancel(db, outbox, reservation_id)
