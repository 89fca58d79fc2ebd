"""
Admin Appointment API

Narrow admin entry points: cancellation by the doctor and an on-demand
reminder pass. Protected by the X-Admin-Token header.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from medbook.bot.webhook import get_bot
from medbook.config import settings
from medbook.db.repository import AppointmentRepository, DoctorRepository
from medbook.db.session import get_db_session
from medbook.models.schemas import (
    AppointmentActionResponse,
    CancelAppointmentRequest,
    ReminderRunResponse,
)
from medbook.services.dispatcher import AppointmentDispatcher
from medbook.services.google import get_google_client
from medbook.services.notifier import TelegramNotifier
from medbook.services.reminders import ReminderService
from medbook.services.session_store import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["admin"])


async def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=503, detail="Admin API is disabled")
    if x_admin_token != settings.admin_api_token:
        logger.warning("Invalid admin token received")
        raise HTTPException(status_code=403, detail="Invalid admin token")


def get_notifier() -> TelegramNotifier:
    bot = get_bot()
    if bot is None:
        raise HTTPException(status_code=503, detail="Telegram bot token not configured")
    return TelegramNotifier(bot)


@router.post(
    "/appointments/{appointment_id}/cancel",
    response_model=AppointmentActionResponse,
    dependencies=[Depends(require_admin_token)],
)
async def cancel_appointment(
    appointment_id: uuid.UUID,
    body: CancelAppointmentRequest | None = None,
    db: AsyncSession = Depends(get_db_session),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> AppointmentActionResponse:
    """Cancel a PENDING or CONFIRMED appointment on the doctor's behalf."""
    doctor = await DoctorRepository(db).get_primary()
    if doctor is None:
        raise HTTPException(status_code=503, detail="Doctor profile not configured")

    repository = AppointmentRepository(db)
    if await repository.get_with_details(appointment_id) is None:
        raise HTTPException(status_code=404, detail="Appointment not found")

    dispatcher = AppointmentDispatcher(db, notifier, doctor, get_google_client())
    applied = await dispatcher.cancel_by_doctor(appointment_id, body.reason if body else None)

    appointment = await repository.get_with_details(appointment_id)
    return AppointmentActionResponse(
        appointment_id=appointment_id,
        applied=applied,
        status=appointment.status if appointment else None,
    )


@router.post(
    "/reminders/run",
    response_model=ReminderRunResponse,
    dependencies=[Depends(require_admin_token)],
)
async def run_reminders(
    db: AsyncSession = Depends(get_db_session),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> ReminderRunResponse:
    sent = await ReminderService(db, notifier).run_once()
    purged = await SessionStore(db).purge_expired()
    return ReminderRunResponse(sent=sent, purged_sessions=purged)
