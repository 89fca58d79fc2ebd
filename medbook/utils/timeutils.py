"""
Wall-clock time helpers.

The practice runs on local time in a single business timezone. Appointment
start times are stored as naive local datetimes, and every computation or
message that shows a date or time goes through this module.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from medbook.config import settings
from medbook.db.models import Language

WEEKDAY_CODES = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")

# Indexed by date.weekday()
_DAY_NAMES = {
    Language.RU: ("Пн", "Вт", "Ср", "Чт", "Пт", "Сб", "Вс"),
    Language.ARM: ("Երկ", "Երք", "Չրք", "Հնգ", "Ուրբ", "Շբթ", "Կիր"),
}

_MONTH_NAMES = {
    Language.RU: (
        "янв", "фев", "мар", "апр", "мая", "июн",
        "июл", "авг", "сен", "окт", "ноя", "дек",
    ),
    Language.ARM: (
        "հնվ", "փտվ", "մրտ", "ապր", "մյս", "հնս",
        "հլս", "օգս", "սեպ", "հոկ", "նոյ", "դեկ",
    ),
}


def business_tz() -> ZoneInfo:
    return ZoneInfo(settings.business_timezone)


def local_now() -> datetime:
    """Current naive wall-clock time in the business timezone."""
    return datetime.now(business_tz()).replace(tzinfo=None, microsecond=0)


def local_today() -> date:
    return local_now().date()


def to_minutes(value: time) -> int:
    """Minutes since midnight."""
    return value.hour * 60 + value.minute


def from_minutes(minutes: int) -> time:
    if not 0 <= minutes < 24 * 60:
        raise ValueError(f"Minutes out of range for a time of day: {minutes}")
    return time(minutes // 60, minutes % 60)


def combine(day: date, at: time) -> datetime:
    return datetime.combine(day, at.replace(second=0, microsecond=0))


def end_of(start: datetime, duration_minutes: int) -> datetime:
    return start + timedelta(minutes=duration_minutes)


def weekday_code(day: date) -> str:
    return WEEKDAY_CODES[day.weekday()]


def format_time(at: time) -> str:
    return at.strftime("%H:%M")


def format_date_button(day: date, language: Optional[Language]) -> str:
    """Short label used on date picker buttons, e.g. "Пн 12 янв"."""
    lang = language or Language.RU
    return f"{_DAY_NAMES[lang][day.weekday()]} {day.day} {_MONTH_NAMES[lang][day.month - 1]}"


def format_date(day: date) -> str:
    return day.strftime("%d.%m.%Y")


def format_datetime(value: datetime, language: Optional[Language] = None) -> str:
    """Date and time for patient and doctor messages, e.g. "Пн 12.01.2026 09:30"."""
    lang = language or Language.RU
    return f"{_DAY_NAMES[lang][value.weekday()]} {format_date(value.date())} {format_time(value.time())}"


def hours_until(value: datetime, now: datetime) -> float:
    return (value - now).total_seconds() / 3600
