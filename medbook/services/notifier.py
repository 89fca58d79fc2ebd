"""
Telegram Notifier

Outbound Telegram calls used by the booking flow, the approval dispatcher,
the reminder loop and webhook registration. Failures are logged and
reported as False, never raised into the caller.
"""

import asyncio
import logging
from typing import List, Optional, Union

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from aiogram.types import InlineKeyboardMarkup, ReplyKeyboardMarkup, ReplyKeyboardRemove

from medbook.config import settings

logger = logging.getLogger(__name__)

ReplyMarkup = Union[InlineKeyboardMarkup, ReplyKeyboardMarkup, ReplyKeyboardRemove]


class TelegramNotifier:
    """Thin wrapper over aiogram's Bot with bounded, non-raising calls."""

    def __init__(self, bot: Bot, timeout: Optional[float] = None):
        self.bot = bot
        self.timeout = timeout or settings.external_timeout_seconds

    async def send_message(
        self,
        chat_id: Union[int, str],
        text: str,
        reply_markup: Optional[ReplyMarkup] = None,
    ) -> bool:
        """
        Send a text message.

        Returns:
            True if Telegram accepted the message
        """
        try:
            await asyncio.wait_for(
                self.bot.send_message(chat_id=chat_id, text=text, reply_markup=reply_markup),
                timeout=self.timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.error(f"Timed out sending message to chat {chat_id}")
        except TelegramAPIError as e:
            logger.error(f"Failed to send message to chat {chat_id}: {e}")
        return False

    async def answer_callback(self, callback_query_id: str, text: Optional[str] = None) -> bool:
        """Acknowledge a callback query so the client stops its spinner."""
        try:
            await asyncio.wait_for(
                self.bot.answer_callback_query(callback_query_id=callback_query_id, text=text),
                timeout=self.timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.error(f"Timed out answering callback {callback_query_id}")
        except TelegramAPIError as e:
            logger.warning(f"Failed to answer callback {callback_query_id}: {e}")
        return False

    async def clear_buttons(self, chat_id: Union[int, str], message_id: int) -> bool:
        """Remove the inline keyboard from a message that was acted upon."""
        try:
            await asyncio.wait_for(
                self.bot.edit_message_reply_markup(
                    chat_id=chat_id, message_id=message_id, reply_markup=None
                ),
                timeout=self.timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Timed out clearing buttons in chat {chat_id}")
        except TelegramAPIError as e:
            logger.debug(f"Could not clear buttons in chat {chat_id}: {e}")
        return False

    async def set_webhook(
        self,
        url: str,
        secret_token: Optional[str] = None,
        allowed_updates: Optional[List[str]] = None,
    ) -> bool:
        """
        Point Telegram at our webhook URL, replacing any previous one.

        Returns:
            True if Telegram reports the expected URL afterwards
        """
        try:
            await self.bot.delete_webhook(drop_pending_updates=False)
            await self.bot.set_webhook(
                url=url,
                drop_pending_updates=False,
                secret_token=secret_token,
                allowed_updates=allowed_updates,
            )
            webhook_info = await self.bot.get_webhook_info()
        except TelegramAPIError as e:
            logger.error(f"Failed to set webhook: {e}")
            return False

        if webhook_info.url != url:
            logger.error(f"Webhook verification failed. Expected: {url}, Got: {webhook_info.url}")
            return False
        logger.info(f"Webhook set to: {url}")
        return True

    async def delete_webhook(self) -> bool:
        try:
            await self.bot.delete_webhook(drop_pending_updates=False)
            return True
        except TelegramAPIError as e:
            logger.error(f"Failed to delete webhook: {e}")
            return False
