"""
Keyboard Builders

Inline and reply keyboards for every step of the booking dialogue and for
the doctor's decision message.
"""

import uuid
from datetime import date, time
from typing import Iterable, Optional, Sequence

from aiogram.types import (
    InlineKeyboardMarkup,
    KeyboardButton,
    ReplyKeyboardMarkup,
    ReplyKeyboardRemove,
)
from aiogram.utils.keyboard import InlineKeyboardBuilder

from medbook.bot.callbacks import (
    ConfirmCallback,
    DateCallback,
    DecisionAction,
    DecisionCallback,
    LanguageCallback,
    ServiceAction,
    ServiceCallback,
    SkipPhoneCallback,
    TimeCallback,
)
from medbook.bot.texts import LANGUAGE_BUTTONS, t
from medbook.db.models import Language, Service
from medbook.utils.timeutils import format_date_button, format_time

DATES_PER_ROW = 3
TIMES_PER_ROW = 4


def language_keyboard() -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for language in (Language.ARM, Language.RU):
        builder.button(
            text=LANGUAGE_BUTTONS[language],
            callback_data=LanguageCallback(language=language),
        )
    builder.adjust(2)
    return builder.as_markup()


def phone_request_keyboard(language: Language) -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[[KeyboardButton(text=t(language, "share_phone_button"), request_contact=True)]],
        resize_keyboard=True,
        one_time_keyboard=True,
    )


def skip_phone_keyboard(language: Language) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(text=t(language, "skip_phone"), callback_data=SkipPhoneCallback())
    return builder.as_markup()


def remove_keyboard() -> ReplyKeyboardRemove:
    return ReplyKeyboardRemove()


def _service_label(service: Service, language: Language, show_prices: bool) -> str:
    label = service.name_for(language)
    if show_prices and service.price_min is not None:
        if service.price_max is not None and service.price_max != service.price_min:
            label = f"{label} ({service.price_min}-{service.price_max} ֏)"
        else:
            label = f"{label} ({service.price_min} ֏)"
    return label


def service_keyboard(
    services: Sequence[Service],
    language: Language,
    offer_keep_other: bool = False,
    show_prices: bool = False,
) -> InlineKeyboardMarkup:
    """
    One button per active service, then "Other".

    Args:
        services: Active services in display order
        language: Patient language
        offer_keep_other: Add the "keep as Other" button for an unclassified reason
        show_prices: Append price ranges to labels
    """
    builder = InlineKeyboardBuilder()
    for service in services:
        builder.button(
            text=_service_label(service, language, show_prices),
            callback_data=ServiceCallback(action=ServiceAction.PICK, service_id=service.id),
        )
    if offer_keep_other:
        builder.button(
            text=t(language, "keep_other"),
            callback_data=ServiceCallback(action=ServiceAction.KEEP),
        )
    else:
        builder.button(
            text=t(language, "other_service"),
            callback_data=ServiceCallback(action=ServiceAction.OTHER),
        )
    builder.adjust(1)
    return builder.as_markup()


def date_keyboard(dates: Iterable[date], language: Language) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for day in dates:
        builder.button(
            text=format_date_button(day, language),
            callback_data=DateCallback.for_date(day),
        )
    builder.adjust(DATES_PER_ROW)
    return builder.as_markup()


def time_keyboard(slots: Iterable[time]) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for slot in slots:
        builder.button(text=format_time(slot), callback_data=TimeCallback.for_time(slot))
    builder.adjust(TIMES_PER_ROW)
    return builder.as_markup()


def confirmation_keyboard(language: Language) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(text=t(language, "yes"), callback_data=ConfirmCallback(accepted=True))
    builder.button(text=t(language, "no"), callback_data=ConfirmCallback(accepted=False))
    builder.adjust(2)
    return builder.as_markup()


def decision_keyboard(
    appointment_id: uuid.UUID, language: Optional[Language]
) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(
        text=t(language, "confirm"),
        callback_data=DecisionCallback(action=DecisionAction.CONFIRM, appointment_id=appointment_id),
    )
    builder.button(
        text=t(language, "reject"),
        callback_data=DecisionCallback(action=DecisionAction.REJECT, appointment_id=appointment_id),
    )
    builder.adjust(2)
    return builder.as_markup()
