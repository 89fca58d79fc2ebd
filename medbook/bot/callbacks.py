"""
Callback Data Payloads

Structured inline-button payloads built on aiogram's CallbackData
factories. All packed values stay well within Telegram's 64-byte limit.

`parse_callback_data` also understands the plain-string payloads used by
earlier versions of the bot, so buttons already sitting in chats keep
working.
"""

import logging
import re
import uuid
from datetime import date, time
from enum import Enum
from typing import List, Optional, Type, Union

from aiogram.filters.callback_data import CallbackData
from pydantic import Field, field_validator

from medbook.db.models import Language
from medbook.utils.timeutils import from_minutes, to_minutes

logger = logging.getLogger(__name__)


class ServiceAction(str, Enum):
    PICK = "pick"
    OTHER = "other"
    KEEP = "keep"


class DecisionAction(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"


class LanguageCallback(CallbackData, prefix="lang"):
    language: Language


class SkipPhoneCallback(CallbackData, prefix="skip_phone"):
    pass


class ServiceCallback(CallbackData, prefix="svc"):
    action: ServiceAction
    service_id: Optional[uuid.UUID] = None


class DateCallback(CallbackData, prefix="date"):
    day: str

    @field_validator("day")
    @classmethod
    def validate_day(cls, v: str) -> str:
        date.fromisoformat(v)
        return v

    @classmethod
    def for_date(cls, value: date) -> "DateCallback":
        return cls(day=value.isoformat())

    @property
    def selected(self) -> date:
        return date.fromisoformat(self.day)


class TimeCallback(CallbackData, prefix="time"):
    minutes: int = Field(ge=0, lt=24 * 60)

    @classmethod
    def for_time(cls, value: time) -> "TimeCallback":
        return cls(minutes=to_minutes(value))

    @property
    def selected(self) -> time:
        return from_minutes(self.minutes)


class ConfirmCallback(CallbackData, prefix="confirm"):
    accepted: bool


class DecisionCallback(CallbackData, prefix="apt"):
    action: DecisionAction
    appointment_id: uuid.UUID


BookingCallback = Union[
    LanguageCallback,
    SkipPhoneCallback,
    ServiceCallback,
    DateCallback,
    TimeCallback,
    ConfirmCallback,
    DecisionCallback,
]

_FACTORIES: List[Type[CallbackData]] = [
    LanguageCallback,
    SkipPhoneCallback,
    ServiceCallback,
    DateCallback,
    TimeCallback,
    ConfirmCallback,
    DecisionCallback,
]

_LEGACY_DATE = re.compile(r"^(?:select_)?date_(\d{4}-\d{2}-\d{2})$")
_LEGACY_TIME = re.compile(r"^time_(\d{1,2}):(\d{2})$")
_LEGACY_DATE_TIME = re.compile(r"^select_time_\d{4}-\d{2}-\d{2}_(\d{1,2}):(\d{2})$")
_LEGACY_DECISION = re.compile(
    r"^(?:apt_(confirm|reject)|(confirm|reject)_booking)_([0-9a-fA-F-]{32,36})$"
)


def _parse_legacy(data: str) -> Optional[BookingCallback]:
    if data == "lang_arm":
        return LanguageCallback(language=Language.ARM)
    if data == "lang_ru":
        return LanguageCallback(language=Language.RU)
    if data == "skip_phone":
        return SkipPhoneCallback()
    if data == "service_other":
        return ServiceCallback(action=ServiceAction.OTHER)
    if data == "confirm_yes":
        return ConfirmCallback(accepted=True)
    if data == "confirm_no":
        return ConfirmCallback(accepted=False)

    match = _LEGACY_DECISION.match(data)
    if match:
        action = match.group(1) or match.group(2)
        return DecisionCallback(
            action=DecisionAction(action), appointment_id=uuid.UUID(match.group(3))
        )
    if data.startswith("service_"):
        return ServiceCallback(
            action=ServiceAction.PICK, service_id=uuid.UUID(data[len("service_"):])
        )
    match = _LEGACY_DATE.match(data)
    if match:
        return DateCallback.for_date(date.fromisoformat(match.group(1)))
    match = _LEGACY_TIME.match(data) or _LEGACY_DATE_TIME.match(data)
    if match:
        return TimeCallback.for_time(time(int(match.group(1)), int(match.group(2))))
    return None


def parse_callback_data(data: Optional[str]) -> Optional[BookingCallback]:
    """
    Decode a callback payload into its typed form.

    Returns:
        The typed payload, or None for unknown or malformed data
    """
    if not data:
        return None

    prefix = data.split(":", 1)[0]
    for factory in _FACTORIES:
        if factory.__prefix__ == prefix and (":" in data or factory is SkipPhoneCallback):
            try:
                return factory.unpack(data)
            except (TypeError, ValueError) as e:
                logger.warning(f"Malformed callback data {data!r}: {e}")
                return None

    try:
        return _parse_legacy(data)
    except ValueError as e:
        logger.warning(f"Malformed legacy callback data {data!r}: {e}")
        return None
