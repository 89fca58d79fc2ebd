"""
Appointment Reminders

Sends each confirmed appointment a reminder about a day ahead and again
about two hours ahead. Every reminder is recorded in reminder_logs and sent
at most once; a failed send is not recorded, so the next run retries it.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from medbook.bot.texts import t
from medbook.config import settings
from medbook.db.models import Appointment, ReminderType
from medbook.db.repository import AppointmentRepository, ReminderRepository
from medbook.db.session import get_db_context
from medbook.services.notifier import TelegramNotifier
from medbook.services.session_store import SessionStore
from medbook.utils.timeutils import format_datetime, hours_until, local_now

logger = logging.getLogger(__name__)

# Inclusive windows in hours before the appointment
REMINDER_WINDOWS = {
    ReminderType.BEFORE_24H: (23.0, 25.0),
    ReminderType.BEFORE_2H: (1.5, 2.5),
}


def reminder_type_for(hours_left: float) -> Optional[ReminderType]:
    for reminder_type, (low, high) in REMINDER_WINDOWS.items():
        if low <= hours_left <= high:
            return reminder_type
    return None


class ReminderService:
    """
    One pass over upcoming confirmed appointments.

    Args:
        db: Database session
        notifier: Outbound Telegram transport
        clock: Returns the current local wall-clock time
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: TelegramNotifier,
        clock: Callable[[], datetime] = local_now,
    ):
        self.notifier = notifier
        self.clock = clock
        self.appointments = AppointmentRepository(db)
        self.reminders = ReminderRepository(db)

    async def run_once(self) -> int:
        """
        Send due reminders.

        Returns:
            Number of reminders delivered
        """
        now = self.clock()
        lowest = min(low for low, _ in REMINDER_WINDOWS.values())
        highest = max(high for _, high in REMINDER_WINDOWS.values())
        upcoming = await self.appointments.list_confirmed_between(
            now + timedelta(hours=lowest), now + timedelta(hours=highest)
        )

        sent = 0
        for appointment in upcoming:
            reminder_type = reminder_type_for(hours_until(appointment.start_date_time, now))
            if reminder_type is None:
                continue
            if await self._send(appointment, reminder_type, now):
                sent += 1

        if sent:
            logger.info(f"Sent {sent} appointment reminders")
        return sent

    async def _send(
        self, appointment: Appointment, reminder_type: ReminderType, now: datetime
    ) -> bool:
        patient = appointment.patient
        if not patient.telegram_user_id:
            return False
        if await self.reminders.was_sent(appointment.id, reminder_type):
            return False

        language = patient.language
        key = "reminder_24h" if reminder_type == ReminderType.BEFORE_24H else "reminder_2h"
        service = (
            appointment.service.name_for(language)
            if appointment.service is not None
            else appointment.custom_reason or ""
        )
        text = t(
            language,
            key,
            datetime=format_datetime(appointment.start_date_time, language),
            service=service,
        )

        if not await self.notifier.send_message(patient.telegram_user_id, text):
            logger.error(
                f"Failed to send {reminder_type.value} reminder for appointment {appointment.id}"
            )
            return False

        await self.reminders.record(appointment.id, reminder_type, now)
        logger.info(f"Sent {reminder_type.value} reminder for appointment {appointment.id}")
        return True


async def run_maintenance_once(notifier: TelegramNotifier) -> tuple:
    """Send due reminders and purge expired sessions in one database session."""
    async with get_db_context() as db:
        sent = await ReminderService(db, notifier).run_once()
        purged = await SessionStore(db).purge_expired()
    return sent, purged


async def reminder_loop(notifier: TelegramNotifier, interval: Optional[int] = None) -> None:
    """
    Background task started from the application lifespan.

    Each pass runs in its own database session; a failing pass is logged
    and the loop carries on with the next interval.
    """
    interval = interval or settings.reminder_interval_seconds
    logger.info(f"Reminder loop started, interval {interval}s")
    while True:
        try:
            await run_maintenance_once(notifier)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Reminder pass failed: {e}", exc_info=True)
        await asyncio.sleep(interval)
