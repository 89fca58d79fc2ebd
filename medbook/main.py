"""
MedBook application entry point.

Wires the Telegram webhook, the admin API and the reminder loop into one
FastAPI app. Run with `python -m medbook.main` or any ASGI server.
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from medbook import __version__
from medbook.api.appointments import router as admin_router
from medbook.bot.webhook import get_bot, shutdown_webhook, startup_webhook
from medbook.bot.webhook import router as webhook_router
from medbook.config import settings
from medbook.db.session import check_database_connection, close_database_connection, init_models
from medbook.services.notifier import TelegramNotifier
from medbook.services.reminders import reminder_loop

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger(__name__)

logger.info("=" * 60)
logger.info("MedBook Telegram Booking")
logger.info("=" * 60)
logger.info(f"Python version: {sys.version}")
logger.info(f"Debug mode: {settings.debug}")
logger.info(f"Log level: {settings.log_level}")
logger.info(f"Database URL: {settings.database_url.split('@')[0]}@***")
logger.info(f"Bot token configured: {'Yes' if settings.telegram_bot_token else 'No'}")
logger.info(f"Webhook URL: {settings.telegram_webhook_url or 'Not configured'}")
logger.info(f"Business timezone: {settings.business_timezone}")
logger.info("=" * 60)


def start_reminder_task() -> Optional[asyncio.Task]:
    if not settings.reminders_enabled:
        logger.info("Reminders disabled")
        return None
    bot = get_bot()
    if bot is None:
        logger.warning("No bot token configured, reminders will not be sent")
        return None
    return asyncio.create_task(reminder_loop(TelegramNotifier(bot)), name="reminder_loop")


async def stop_reminder_task(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info("Reminder loop stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: verify the database (creating tables on SQLite), register the
    webhook and start the reminder loop. Shutdown undoes it in reverse.
    """
    logger.info("🚀 Starting MedBook...")
    reminder_task: Optional[asyncio.Task] = None

    try:
        if settings.is_sqlite:
            await init_models()

        db_healthy = await check_database_connection()
        if db_healthy:
            logger.info("✅ Database reachable")
        else:
            logger.error("❌ Database unreachable, bookings will fail until it recovers")

        await startup_webhook()
        reminder_task = start_reminder_task()

        logger.info("✅ Startup complete")
        logger.info("=" * 60)

    except Exception as e:
        logger.error(f"❌ Startup failed: {e}", exc_info=True)

    yield

    logger.info("=" * 60)
    logger.info("🛑 Stopping MedBook...")

    try:
        await stop_reminder_task(reminder_task)
        await shutdown_webhook()
        await close_database_connection()
        logger.info("✅ Shutdown complete")

    except Exception as e:
        logger.error(f"❌ Shutdown failed: {e}", exc_info=True)

    logger.info("=" * 60)


app = FastAPI(
    title="MedBook Telegram Booking",
    description=(
        "Telegram appointment booking for a single doctor. Patients pick a "
        "service, date and time through inline buttons; the doctor confirms "
        "or rejects each request from Telegram."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """Basic API information."""
    return {
        "message": "MedBook Telegram Booking API",
        "version": __version__,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "docs": "/docs" if settings.debug else "disabled in production",
            "telegram_webhook": "/telegram/webhook",
            "webhook_info": "/telegram/webhook/info",
            "cancel_appointment": "/api/appointments/{appointment_id}/cancel",
            "run_reminders": "/api/reminders/run",
        }
    }


@app.get("/health")
async def health_check():
    """Liveness plus database reachability; 503 when the database is down."""
    db_healthy = await check_database_connection()
    return JSONResponse(
        status_code=200 if db_healthy else 503,
        content={
            "status": "healthy" if db_healthy else "degraded",
            "api": "operational",
            "database": "connected" if db_healthy else "disconnected",
            "version": __version__,
        },
    )


@app.get("/info")
async def app_info():
    return {
        "name": "MedBook Telegram Booking",
        "version": __version__,
        "environment": "development" if settings.debug else "production",
        "features": {
            "languages": ["ARM", "RU"],
            "database": "SQLite" if settings.is_sqlite else "PostgreSQL",
            "bot_framework": "aiogram",
            "reminders": settings.reminders_enabled,
            "max_active_bookings": settings.max_active_bookings,
        },
    }


app.include_router(webhook_router)
app.include_router(admin_router)

logger.info("📡 Routes mounted: /telegram, /api")

if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting uvicorn on {settings.app_host}:{settings.app_port}")
    uvicorn.run(
        "medbook.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
