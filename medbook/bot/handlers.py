"""
Telegram Bot Message Handlers

Aiogram handlers that adapt incoming messages and button presses into
booking flow and approval dispatcher calls. Each handler opens its own
database session; errors are logged and the user gets a short apology.
"""

import logging
from typing import Optional, Union

from aiogram import Bot, F, Router
from aiogram.filters import CommandStart
from aiogram.types import CallbackQuery, Message
from sqlalchemy.ext.asyncio import AsyncSession

from medbook.bot.callbacks import DecisionAction, DecisionCallback, parse_callback_data
from medbook.bot.texts import t
from medbook.db.models import Doctor, Language
from medbook.db.repository import DoctorRepository
from medbook.db.session import get_db_context
from medbook.services.booking_flow import BookingFlow
from medbook.services.classifier import ServiceClassifier
from medbook.services.dispatcher import AppointmentDispatcher
from medbook.services.google import get_google_client
from medbook.services.notifier import TelegramNotifier

logger = logging.getLogger(__name__)

router = Router(name="booking_router")


async def load_doctor(db: AsyncSession) -> Optional[Doctor]:
    doctor = await DoctorRepository(db).get_primary()
    if doctor is None:
        logger.error("No doctor profile configured, cannot handle bot updates")
    return doctor


def build_flow(db: AsyncSession, bot: Bot, doctor: Doctor) -> BookingFlow:
    return BookingFlow(
        db,
        TelegramNotifier(bot),
        doctor,
        classifier=ServiceClassifier.for_doctor(doctor),
    )


async def _apologize(bot: Bot, chat_id: Union[int, str], language: Optional[Language] = None) -> None:
    await TelegramNotifier(bot).send_message(chat_id, t(language, "generic_error"))


@router.message(CommandStart())
async def cmd_start(message: Message, bot: Bot) -> None:
    """Handle /start: reset the conversation and ask for the language."""
    if message.from_user is None:
        return
    user_id = str(message.from_user.id)
    logger.info(f"User {user_id} ({message.from_user.username}) sent /start")
    try:
        async with get_db_context() as db:
            doctor = await load_doctor(db)
            if doctor is None:
                return
            await build_flow(db, bot, doctor).handle_start(user_id, message.chat.id)
    except Exception as e:
        logger.error(f"Error in /start for user {user_id}: {e}", exc_info=True)
        await _apologize(bot, message.chat.id)


@router.message(F.contact)
async def handle_contact(message: Message, bot: Bot) -> None:
    """Handle a shared contact (phone step)."""
    if message.from_user is None:
        return
    user_id = str(message.from_user.id)
    try:
        async with get_db_context() as db:
            doctor = await load_doctor(db)
            if doctor is None:
                return
            await build_flow(db, bot, doctor).handle_contact(
                user_id, message.chat.id, message.contact.phone_number
            )
    except Exception as e:
        logger.error(f"Error handling contact from user {user_id}: {e}", exc_info=True)
        await _apologize(bot, message.chat.id)


@router.message(F.text)
async def handle_text(message: Message, bot: Bot) -> None:
    """Handle free text for the current conversation step."""
    if message.from_user is None:
        return
    user_id = str(message.from_user.id)
    logger.debug(f"Text from user {user_id}: {message.text[:100]}")
    try:
        async with get_db_context() as db:
            doctor = await load_doctor(db)
            if doctor is None:
                return
            await build_flow(db, bot, doctor).handle_text(user_id, message.chat.id, message.text)
    except Exception as e:
        logger.error(f"Error handling text from user {user_id}: {e}", exc_info=True)
        await _apologize(bot, message.chat.id)


@router.message()
async def handle_other(message: Message, bot: Bot) -> None:
    """Stickers, photos and the like: re-show the current prompt."""
    if message.from_user is None:
        return
    user_id = str(message.from_user.id)
    try:
        async with get_db_context() as db:
            doctor = await load_doctor(db)
            if doctor is None:
                return
            await build_flow(db, bot, doctor).handle_text(user_id, message.chat.id, "")
    except Exception as e:
        logger.error(f"Error handling message from user {user_id}: {e}", exc_info=True)


@router.callback_query()
async def handle_callback(callback: CallbackQuery, bot: Bot) -> None:
    """
    Handle every inline button press.

    Patient buttons go to the booking flow, doctor decision buttons to the
    dispatcher. The callback query is always answered.
    """
    notifier = TelegramNotifier(bot)
    user_id = str(callback.from_user.id)
    chat_id = callback.message.chat.id if callback.message else callback.from_user.id
    payload = parse_callback_data(callback.data)

    try:
        if payload is None:
            logger.warning(f"Unknown callback data from user {user_id}: {callback.data!r}")
            return

        async with get_db_context() as db:
            doctor = await load_doctor(db)
            if doctor is None:
                return

            if isinstance(payload, DecisionCallback):
                dispatcher = AppointmentDispatcher(db, notifier, doctor, get_google_client())
                if payload.action == DecisionAction.CONFIRM:
                    applied = await dispatcher.confirm(payload.appointment_id, chat_id)
                else:
                    applied = await dispatcher.reject(payload.appointment_id, chat_id)
                if applied and callback.message:
                    await notifier.clear_buttons(chat_id, callback.message.message_id)
            else:
                await build_flow(db, bot, doctor).handle_callback(user_id, chat_id, payload)
    except Exception as e:
        logger.error(f"Error handling callback from user {user_id}: {e}", exc_info=True)
        await _apologize(bot, chat_id)
    finally:
        await notifier.answer_callback(callback.id)
