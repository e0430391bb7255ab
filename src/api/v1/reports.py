from fastapi import APIRouter

from src.core.dependencies import DB
from src.schemas.report import SystemStatus
from src.services import report as report_service

router = APIRouter(prefix="/reports", tags=["Reports"])


@router.get("/status", response_model=SystemStatus)
async def get_system_status(db: DB):
    return await report_service.get_system_status(db)
