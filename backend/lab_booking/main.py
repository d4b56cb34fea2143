import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select

from lab_booking.api.v1.admin import router as admin_router
from lab_booking.api.v1.bookings import router as bookings_router
from lab_booking.api.v1.computers import router as computers_router
from lab_booking.api.v1.dashboard import router as dashboard_router
from lab_booking.api.v1.notifications import router as notifications_router
from lab_booking.config import get_settings
from lab_booking.core.timeutils import lab_timezone
from lab_booking.database import async_session_factory
from lab_booking.models.lab_computer import LabComputer
from lab_booking.services.expiration import BookingExpirationSweeper

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def seed_default_computer():
    """Create one lab computer when none exist so the dashboard is not empty."""
    async with async_session_factory() as session:
        try:
            result = await session.execute(select(LabComputer).limit(1))
            if result.scalar_one_or_none() is not None:
                return
            computer = LabComputer(
                name="Lab Workstation 1",
                location="Main lab",
                specifications="Default workstation",
            )
            session.add(computer)
            await session.commit()
            logger.info("Seeded default lab computer: Lab Workstation 1")
        except Exception as e:
            logger.warning("Seed default lab computer skipped: %s", e)
            await session.rollback()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await seed_default_computer()

    sweeper = BookingExpirationSweeper(
        session_factory=async_session_factory,
        tz=lab_timezone(settings.LAB_TIMEZONE),
        interval_seconds=settings.EXPIRATION_SWEEP_INTERVAL_SECONDS,
    )
    app.state.expiration_sweeper = sweeper
    if settings.EXPIRATION_SWEEP_ENABLED:
        sweeper.start()
    else:
        logger.info("Booking expiration sweeper: disabled")
    yield
    await sweeper.stop()
    logger.info("Shutting down...")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API v1 routers
API_V1_PREFIX = "/api/v1"
app.include_router(computers_router, prefix=API_V1_PREFIX)
app.include_router(bookings_router, prefix=API_V1_PREFIX)
app.include_router(notifications_router, prefix=API_V1_PREFIX)
app.include_router(dashboard_router, prefix=API_V1_PREFIX)
app.include_router(admin_router, prefix=API_V1_PREFIX)


@app.get("/health")
async def health_check():
    return {"status": "ok", "version": settings.APP_VERSION}
