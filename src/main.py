import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.v1.router import api_router
from src.config import settings
from src.core.scheduler import PeriodicTask
from src.database import async_session_maker, init_db
from src.services.expiry import run_expiry_tick
from src.services.notification import LoggingNotificationSender, NotificationOutbox
from src.services.overstay import run_overstay_tick

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_reconcilers(outbox: NotificationOutbox) -> list[PeriodicTask]:
    async def expiry_tick():
        return await run_expiry_tick(async_session_maker, outbox)

    async def overstay_tick():
        return await run_overstay_tick(async_session_maker, outbox)

    return [
        PeriodicTask("Auto-cancellation service", settings.expiry_interval_seconds, expiry_tick),
        PeriodicTask("Late pickup service", settings.overstay_interval_seconds, overstay_tick),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()

    outbox = NotificationOutbox(LoggingNotificationSender())
    outbox.start()
    app.state.outbox = outbox

    reconcilers = build_reconcilers(outbox) if settings.reconcilers_enabled else []
    for task in reconcilers:
        task.start()
    logger.info(f"{settings.app_name} started with {settings.total_spots} spots")

    yield

    for task in reconcilers:
        await task.stop()
    await outbox.stop()


app = FastAPI(
    title=settings.app_name,
    description="Reservation and walk-in allocation for a fixed pool of parking spots",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


def run():
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
