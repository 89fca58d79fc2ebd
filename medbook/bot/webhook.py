"""
Telegram Webhook Configuration

Handles webhook setup and FastAPI route integration for Telegram updates.
Dispatches incoming updates to aiogram handlers.
"""

import logging
from collections import OrderedDict
from typing import Any, Optional

from aiogram import Bot, Dispatcher
from aiogram.types import Update
from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from medbook.bot.handlers import router as handlers_router
from medbook.config import settings
from medbook.services.notifier import TelegramNotifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/telegram", tags=["telegram"])

_bot: Optional[Bot] = None
_dispatcher: Optional[Dispatcher] = None

ALLOWED_UPDATES = ["message", "callback_query"]


class UpdateDeduplicator:
    """Bounded memory of recently seen update ids."""

    def __init__(self, max_size: int):
        self.max_size = max_size
        self._seen: "OrderedDict[int, None]" = OrderedDict()

    def seen(self, update_id: Any) -> bool:
        """Return True if the id was seen before; remember it otherwise."""
        if self.max_size <= 0 or not isinstance(update_id, int):
            return False
        if update_id in self._seen:
            return True
        self._seen[update_id] = None
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
        return False


deduplicator = UpdateDeduplicator(settings.update_dedup_size)


def get_bot() -> Optional[Bot]:
    """
    Get or create the bot instance.

    Returns:
        Bot, or None when no token is configured
    """
    global _bot
    if _bot is None and settings.telegram_bot_token:
        _bot = Bot(token=settings.telegram_bot_token)
        logger.info("Bot instance created")
    return _bot


def get_dispatcher() -> Dispatcher:
    """Get or create the dispatcher with the booking handlers registered."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = Dispatcher()
        _dispatcher.include_router(handlers_router)
    return _dispatcher


def _ok() -> JSONResponse:
    return JSONResponse(content={"ok": True})


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
) -> JSONResponse:
    """
    Handle incoming Telegram webhook updates.

    Anything past the secret check is answered with 200 {"ok": true}, even
    unparseable bodies and handler failures, so Telegram does not redeliver.

    Example:
        POST /telegram/webhook
        Body: Telegram Update JSON
    """
    if settings.webhook_secret_token:
        if x_telegram_bot_api_secret_token != settings.webhook_secret_token:
            logger.warning("Invalid webhook secret token received")
            raise HTTPException(status_code=403, detail="Invalid secret token")

    try:
        update_data = await request.json()
    except Exception as e:
        logger.error(f"Failed to parse webhook request body: {e}")
        return _ok()

    if not isinstance(update_data, dict):
        logger.error("Webhook body is not a JSON object")
        return _ok()

    update_id = update_data.get("update_id", "unknown")
    if deduplicator.seen(update_id):
        logger.info(f"Dropping redelivered update #{update_id}")
        return _ok()
    logger.info(f"Received webhook update #{update_id}")

    try:
        update = Update(**update_data)
    except Exception as e:
        logger.error(f"Failed to create Update object: {e}")
        return _ok()

    bot = get_bot()
    if bot is None:
        logger.error("Telegram bot token not configured, dropping update")
        return _ok()

    try:
        await get_dispatcher().feed_update(bot=bot, update=update)
        logger.debug(f"Successfully processed update #{update_id}")
    except Exception as e:
        logger.error(f"Error processing update #{update_id}: {e}", exc_info=True)

    return _ok()


@router.get("/webhook/info")
async def get_webhook_info() -> JSONResponse:
    """Current webhook information from Telegram, for monitoring."""
    bot = get_bot()
    if bot is None:
        raise HTTPException(status_code=503, detail="Telegram bot token not configured")

    try:
        webhook_info = await bot.get_webhook_info()
    except Exception as e:
        logger.error(f"Error getting webhook info: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    return JSONResponse(
        content={
            "url": webhook_info.url,
            "has_custom_certificate": webhook_info.has_custom_certificate,
            "pending_update_count": webhook_info.pending_update_count,
            "last_error_date": str(webhook_info.last_error_date) if webhook_info.last_error_date else None,
            "last_error_message": webhook_info.last_error_message,
            "max_connections": webhook_info.max_connections,
            "allowed_updates": webhook_info.allowed_updates,
        }
    )


async def setup_webhook(webhook_url: str | None = None) -> bool:
    """
    Register the webhook with Telegram.

    Args:
        webhook_url: Webhook URL (uses settings if not provided)

    Returns:
        bool: True if Telegram reports the expected URL
    """
    url = webhook_url or settings.telegram_webhook_url
    if not url:
        logger.warning("No webhook URL configured, skipping webhook setup")
        return False

    bot = get_bot()
    if bot is None:
        logger.warning("No bot token configured, skipping webhook setup")
        return False

    return await TelegramNotifier(bot).set_webhook(
        url, secret_token=settings.webhook_secret_token, allowed_updates=ALLOWED_UPDATES
    )


async def close_bot() -> None:
    """Close the bot's HTTP session."""
    global _bot
    if _bot is not None:
        try:
            await _bot.session.close()
            logger.info("Bot session closed successfully")
        except Exception as e:
            logger.error(f"Error closing bot session: {e}")
        finally:
            _bot = None


async def startup_webhook() -> None:
    """Initialize the bot and register the webhook. Called from the lifespan."""
    logger.info("Initializing Telegram webhook...")
    get_dispatcher()
    if await setup_webhook():
        logger.info("Telegram webhook initialized successfully")
    else:
        logger.error("Failed to initialize Telegram webhook")


async def shutdown_webhook() -> None:
    logger.info("Shutting down Telegram webhook...")
    await close_bot()
    logger.info("Telegram webhook shutdown complete")


@router.get("/health")
async def bot_health_check() -> JSONResponse:
    """Bot health: can we reach Telegram with our token."""
    bot = get_bot()
    if bot is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": "Telegram bot token not configured"},
        )

    try:
        bot_info = await bot.get_me()
    except Exception as e:
        logger.error(f"Bot health check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": str(e)})

    return JSONResponse(
        content={
            "status": "healthy",
            "bot_username": bot_info.username,
            "bot_id": bot_info.id,
            "bot_name": bot_info.first_name,
        }
    )
