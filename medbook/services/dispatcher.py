"""
Doctor Approval & Notification Dispatcher

Applies the doctor's decision on a pending appointment and fans the result
out to the patient, Google Calendar and the bookings sheet.

Status changes are guarded UPDATEs, so a decision applies exactly once no
matter how often the button is pressed. Each side effect runs
independently: a calendar or sheet failure is logged and never undoes the
decision or blocks the patient notification.
"""

import asyncio
import logging
import uuid
from typing import Any, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from medbook.bot.texts import t
from medbook.db.models import Appointment, AppointmentStatus, Doctor
from medbook.db.repository import AppointmentRepository
from medbook.services.google import (
    GoogleSyncError,
    GoogleWorkspaceClient,
    build_calendar_event,
    build_sheet_row,
)
from medbook.services.notifier import TelegramNotifier
from medbook.utils.timeutils import format_datetime

logger = logging.getLogger(__name__)

ChatId = Union[int, str]


class AppointmentDispatcher:
    """
    Confirm, reject and cancel appointments on the doctor's behalf.

    Args:
        db: Database session
        notifier: Outbound Telegram transport
        doctor: The practice's doctor
        google: Calendar/Sheets client; None disables external sync
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: TelegramNotifier,
        doctor: Doctor,
        google: Optional[GoogleWorkspaceClient] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.doctor = doctor
        self.google = google
        self.appointments = AppointmentRepository(db)

    def is_authorized(self, actor_chat_id: Optional[ChatId]) -> bool:
        """Decisions from Telegram are honored only from the doctor's chat."""
        if not self.doctor.telegram_chat_id or actor_chat_id is None:
            return True
        return str(actor_chat_id) == str(self.doctor.telegram_chat_id)

    async def confirm(
        self, appointment_id: uuid.UUID, actor_chat_id: Optional[ChatId] = None
    ) -> bool:
        """
        PENDING -> CONFIRMED, then notify the patient and sync externally.

        Returns:
            True if this call confirmed the appointment
        """
        if not self.is_authorized(actor_chat_id):
            logger.warning(f"Ignoring confirm of {appointment_id} from chat {actor_chat_id}")
            return False

        applied = await self.appointments.transition_status(
            appointment_id, [AppointmentStatus.PENDING], AppointmentStatus.CONFIRMED
        )
        if not applied:
            await self._reply_already_processed(actor_chat_id)
            return False

        appointment = await self.appointments.get_with_details(appointment_id)
        if appointment is None:
            logger.error(f"Confirmed appointment {appointment_id} vanished")
            return True

        language = appointment.patient.language
        patient_text = t(
            language,
            "appointment_confirmed",
            doctor_name=self.doctor.display_name,
            datetime=format_datetime(appointment.start_date_time, language),
        )
        _, event_id, _ = await self._fan_out(
            self._notify_patient(appointment, patient_text),
            self._create_calendar_event(appointment),
            self._append_sheet_row(appointment),
        )
        if event_id:
            await self.appointments.set_calendar_event_id(appointment.id, event_id)

        await self._reply_to_doctor(actor_chat_id, "doctor_confirmed", appointment)
        return True

    async def reject(
        self,
        appointment_id: uuid.UUID,
        actor_chat_id: Optional[ChatId] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """PENDING -> REJECTED, then notify the patient with the reason."""
        if not self.is_authorized(actor_chat_id):
            logger.warning(f"Ignoring reject of {appointment_id} from chat {actor_chat_id}")
            return False

        applied = await self.appointments.transition_status(
            appointment_id,
            [AppointmentStatus.PENDING],
            AppointmentStatus.REJECTED,
            rejection_reason=reason,
        )
        if not applied:
            await self._reply_already_processed(actor_chat_id)
            return False

        appointment = await self.appointments.get_with_details(appointment_id)
        if appointment is None:
            logger.error(f"Rejected appointment {appointment_id} vanished")
            return True

        language = appointment.patient.language
        await self._fan_out(
            self._notify_patient(
                appointment, t(language, "appointment_rejected", reason=reason or "-")
            ),
            self._append_sheet_row(appointment),
        )
        await self._reply_to_doctor(actor_chat_id, "doctor_rejected", appointment)
        return True

    async def cancel_by_doctor(
        self, appointment_id: uuid.UUID, reason: Optional[str] = None
    ) -> bool:
        """
        PENDING/CONFIRMED -> CANCELLED_BY_DOCTOR.

        Notifies the patient, removes the calendar event if one was created
        and logs the change to the sheet.
        """
        applied = await self.appointments.transition_status(
            appointment_id,
            [AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED],
            AppointmentStatus.CANCELLED_BY_DOCTOR,
            rejection_reason=reason,
        )
        if not applied:
            logger.info(f"Appointment {appointment_id} is not active, nothing to cancel")
            return False

        appointment = await self.appointments.get_with_details(appointment_id)
        if appointment is None:
            logger.error(f"Cancelled appointment {appointment_id} vanished")
            return True

        language = appointment.patient.language
        text = t(
            language,
            "cancelled_by_doctor",
            datetime=format_datetime(appointment.start_date_time, language),
            reason=reason or "-",
        )
        _, deleted, _ = await self._fan_out(
            self._notify_patient(appointment, text),
            self._delete_calendar_event(appointment),
            self._append_sheet_row(appointment),
        )
        if deleted:
            await self.appointments.set_calendar_event_id(appointment.id, None)
        return True

    async def _fan_out(self, *tasks: Any) -> list:
        """Run side effects concurrently; a failure yields None in its place."""
        results = await asyncio.gather(*tasks, return_exceptions=True)
        outcome = []
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Side effect failed: {result}", exc_info=result)
                outcome.append(None)
            else:
                outcome.append(result)
        return outcome

    async def _notify_patient(self, appointment: Appointment, text: str) -> bool:
        chat_id = appointment.patient.telegram_user_id
        if not chat_id:
            logger.info(f"Patient of appointment {appointment.id} has no Telegram account")
            return False
        sent = await self.notifier.send_message(chat_id, text)
        if not sent:
            logger.error(f"Patient notification failed for appointment {appointment.id}")
        return sent

    async def _create_calendar_event(self, appointment: Appointment) -> Optional[str]:
        if self.google is None or not self.google.enabled or not self.doctor.google_calendar_id:
            return None
        try:
            created = await self.google.create_event(
                self.doctor.google_calendar_id, build_calendar_event(appointment)
            )
        except GoogleSyncError as e:
            logger.error(f"Calendar sync failed for appointment {appointment.id}: {e}")
            return None
        return created.get("id")

    async def _delete_calendar_event(self, appointment: Appointment) -> bool:
        if not appointment.google_calendar_event_id:
            return False
        if self.google is None or not self.google.enabled or not self.doctor.google_calendar_id:
            return False
        try:
            await self.google.delete_event(
                self.doctor.google_calendar_id, appointment.google_calendar_event_id
            )
        except GoogleSyncError as e:
            logger.error(f"Calendar delete failed for appointment {appointment.id}: {e}")
            return False
        return True

    async def _append_sheet_row(self, appointment: Appointment) -> bool:
        if self.google is None or not self.google.enabled or not self.doctor.google_sheet_id:
            return False
        try:
            await self.google.append_row(self.doctor.google_sheet_id, build_sheet_row(appointment))
        except GoogleSyncError as e:
            logger.error(f"Sheet sync failed for appointment {appointment.id}: {e}")
            return False
        return True

    async def _reply_already_processed(self, actor_chat_id: Optional[ChatId]) -> None:
        chat_id = actor_chat_id or self.doctor.telegram_chat_id
        if chat_id:
            await self.notifier.send_message(
                chat_id, t(self.doctor.interface_language, "already_processed")
            )

    async def _reply_to_doctor(
        self, actor_chat_id: Optional[ChatId], key: str, appointment: Appointment
    ) -> None:
        chat_id = actor_chat_id or self.doctor.telegram_chat_id
        if not chat_id:
            return
        language = self.doctor.interface_language
        await self.notifier.send_message(
            chat_id,
            t(
                language,
                key,
                patient=appointment.patient.full_name,
                datetime=format_datetime(appointment.start_date_time, language),
            ),
        )
