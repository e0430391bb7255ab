from fastapi import APIRouter

from src.api.v1 import reports, reservations, sessions, users

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(users.router)
api_router.include_router(reservations.router)
api_router.include_router(sessions.router)
api_router.include_router(reports.router)
