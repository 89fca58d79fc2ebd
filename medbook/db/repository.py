"""
Database Repository Layer

Implements repository pattern for database operations.
Provides abstraction over SQLAlchemy for cleaner business logic.
"""

import logging
import uuid
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from medbook.db.models import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    BlockedDay,
    BlockedSlot,
    Doctor,
    Language,
    Patient,
    ReminderLog,
    ReminderType,
    Service,
    TelegramSession,
)
from medbook.utils.timeutils import local_now

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


class SlotConflictError(DatabaseError):
    """Raised when an insert collides with an active appointment at the same start."""
    pass


class BaseRepository:
    """Base repository with common database operations."""

    def __init__(self, session: AsyncSession):
        """
        Initialize repository with database session.

        Args:
            session: AsyncSession instance for database operations
        """
        self.session = session

    async def execute(self, statement: Any) -> Any:
        """
        Execute a SQLAlchemy statement, wrapping driver errors.

        Raises:
            DatabaseError: If statement execution fails
        """
        try:
            return await self.session.execute(statement)
        except SQLAlchemyError as e:
            logger.error(f"Query execution failed: {e}")
            raise DatabaseError(f"Database operation failed: {str(e)}") from e

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Commit failed: {e}")
            raise DatabaseError(f"Database commit failed: {str(e)}") from e

    @property
    def dialect_name(self) -> str:
        return self.session.get_bind().dialect.name


class DoctorRepository(BaseRepository):
    """Repository for the practice's doctor profile."""

    async def get_primary(self) -> Optional[Doctor]:
        """Return the practice's doctor (the earliest created row)."""
        result = await self.execute(
            select(Doctor).order_by(Doctor.created_at, Doctor.id).limit(1)
        )
        return result.scalars().first()

    async def get_by_id(self, doctor_id: uuid.UUID) -> Optional[Doctor]:
        result = await self.execute(select(Doctor).where(Doctor.id == doctor_id))
        return result.scalars().first()

    async def lock(self, doctor_id: uuid.UUID) -> None:
        """
        Take the doctor row lock for the current transaction.

        Serializes booking commits across processes on PostgreSQL. SQLite
        ignores FOR UPDATE, where the in-process lock is the only guard.
        """
        await self.execute(
            select(Doctor.id).where(Doctor.id == doctor_id).with_for_update()
        )


class ServiceRepository(BaseRepository):
    """Repository for the service catalog (read-only)."""

    async def list_active(self, doctor_id: uuid.UUID) -> List[Service]:
        result = await self.execute(
            select(Service)
            .where(Service.doctor_id == doctor_id, Service.is_active.is_(True))
            .order_by(Service.sort_order, Service.name_ru)
        )
        return list(result.scalars().all())

    async def get_active(
        self, doctor_id: uuid.UUID, service_id: uuid.UUID
    ) -> Optional[Service]:
        result = await self.execute(
            select(Service).where(
                Service.id == service_id,
                Service.doctor_id == doctor_id,
                Service.is_active.is_(True),
            )
        )
        return result.scalars().first()

    async def get_by_id(self, service_id: uuid.UUID) -> Optional[Service]:
        result = await self.execute(select(Service).where(Service.id == service_id))
        return result.scalars().first()


class PatientRepository(BaseRepository):
    """Repository for patient records."""

    async def get_by_telegram_id(self, telegram_user_id: str) -> Optional[Patient]:
        result = await self.execute(
            select(Patient).where(Patient.telegram_user_id == telegram_user_id)
        )
        return result.scalars().first()

    async def get_by_id(self, patient_id: uuid.UUID) -> Optional[Patient]:
        result = await self.execute(select(Patient).where(Patient.id == patient_id))
        return result.scalars().first()

    async def upsert_identity(
        self,
        telegram_user_id: str,
        first_name: str,
        last_name: Optional[str],
        language: Language,
    ) -> Patient:
        """
        Create the patient or refresh their name and language.

        Args:
            telegram_user_id: Telegram user id as string
            first_name: First name typed by the patient
            last_name: Remaining name tokens, if any
            language: Language chosen in the conversation

        Returns:
            The persisted Patient
        """
        patient = await self.get_by_telegram_id(telegram_user_id)
        if patient is None:
            patient = Patient(
                telegram_user_id=telegram_user_id,
                first_name=first_name,
                last_name=last_name,
                language=language,
            )
            self.session.add(patient)
            logger.info(f"Creating patient for Telegram user {telegram_user_id}")
        else:
            patient.first_name = first_name
            patient.last_name = last_name
            patient.language = language
            logger.info(f"Updating patient {patient.id} identity")

        await self.commit()
        return patient

    async def update_phone(self, patient_id: uuid.UUID, phone_number: str) -> None:
        await self.execute(
            update(Patient)
            .where(Patient.id == patient_id)
            .values(phone_number=phone_number)
        )
        await self.commit()


class AppointmentRepository(BaseRepository):
    """Repository for appointment-related database operations."""

    async def count_active_future(
        self,
        doctor_id: uuid.UUID,
        patient_id: uuid.UUID,
        now: datetime,
    ) -> int:
        """Count the patient's upcoming PENDING/CONFIRMED appointments."""
        result = await self.execute(
            select(func.count(Appointment.id)).where(
                Appointment.doctor_id == doctor_id,
                Appointment.patient_id == patient_id,
                Appointment.status.in_(ACTIVE_STATUSES),
                Appointment.start_date_time >= now,
            )
        )
        return int(result.scalar() or 0)

    async def get_busy_intervals(
        self,
        doctor_id: uuid.UUID,
        start: datetime,
        end: datetime,
    ) -> List[Tuple[datetime, int]]:
        """
        Start/duration pairs of active appointments starting in [start, end).
        """
        result = await self.execute(
            select(Appointment.start_date_time, Appointment.duration_minutes)
            .where(
                Appointment.doctor_id == doctor_id,
                Appointment.status.in_(ACTIVE_STATUSES),
                Appointment.start_date_time >= start,
                Appointment.start_date_time < end,
            )
            .order_by(Appointment.start_date_time)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def find_active_at(
        self,
        doctor_id: uuid.UUID,
        start_date_time: datetime,
    ) -> Optional[Appointment]:
        result = await self.execute(
            select(Appointment).where(
                Appointment.doctor_id == doctor_id,
                Appointment.start_date_time == start_date_time,
                Appointment.status.in_(ACTIVE_STATUSES),
            )
        )
        return result.scalars().first()

    async def add_pending(
        self,
        doctor_id: uuid.UUID,
        patient_id: uuid.UUID,
        start_date_time: datetime,
        duration_minutes: int,
        service_id: Optional[uuid.UUID] = None,
        custom_reason: Optional[str] = None,
        source: str = "Telegram",
        created_at: Optional[datetime] = None,
    ) -> Appointment:
        """
        Insert a PENDING appointment and flush it within the open transaction.

        The caller owns the transaction and commits once every booking
        check has passed. Timestamps are local wall-clock time, like the
        appointment itself.

        Raises:
            SlotConflictError: Another active appointment starts at the same time
        """
        stamp = created_at or local_now()
        appointment = Appointment(
            doctor_id=doctor_id,
            patient_id=patient_id,
            service_id=service_id,
            custom_reason=custom_reason,
            start_date_time=start_date_time,
            duration_minutes=duration_minutes,
            status=AppointmentStatus.PENDING,
            source=source,
            created_at=stamp,
            updated_at=stamp,
        )
        self.session.add(appointment)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning(f"Active appointment already exists at {start_date_time}: {e}")
            raise SlotConflictError("Slot already booked") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to create appointment: {e}")
            raise DatabaseError(f"Failed to create appointment: {str(e)}") from e
        return appointment

    async def get_with_details(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        """Load an appointment together with its patient and service."""
        result = await self.execute(
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .options(selectinload(Appointment.patient), selectinload(Appointment.service))
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def transition_status(
        self,
        appointment_id: uuid.UUID,
        from_statuses: Iterable[AppointmentStatus],
        to_status: AppointmentStatus,
        rejection_reason: Optional[str] = None,
    ) -> bool:
        """
        Atomically move an appointment between statuses.

        The UPDATE only applies while the current status is one of
        `from_statuses`, so concurrent or repeated decisions apply once.

        Returns:
            True if this call changed the row
        """
        values: Dict[str, Any] = {"status": to_status}
        if rejection_reason is not None:
            values["rejection_reason"] = rejection_reason

        result = await self.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.status.in_(list(from_statuses)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.commit()
        applied = result.rowcount == 1
        logger.info(
            f"Appointment {appointment_id} transition to {to_status.value}: "
            f"{'applied' if applied else 'skipped'}"
        )
        return applied

    async def set_calendar_event_id(
        self, appointment_id: uuid.UUID, event_id: Optional[str]
    ) -> None:
        await self.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id)
            .values(google_calendar_event_id=event_id)
            .execution_options(synchronize_session=False)
        )
        await self.commit()

    async def list_confirmed_between(
        self, start: datetime, end: datetime
    ) -> Sequence[Appointment]:
        """Confirmed appointments starting in [start, end], with patient and service."""
        result = await self.execute(
            select(Appointment)
            .where(
                Appointment.status == AppointmentStatus.CONFIRMED,
                Appointment.start_date_time >= start,
                Appointment.start_date_time <= end,
            )
            .options(selectinload(Appointment.patient), selectinload(Appointment.service))
            .order_by(Appointment.start_date_time)
        )
        return result.scalars().all()


class BlockedTimeRepository(BaseRepository):
    """Repository for blocked days and blocked slots (read-only)."""

    async def get_blocked_days(
        self, doctor_id: uuid.UUID, start: date, end: date
    ) -> List[date]:
        result = await self.execute(
            select(BlockedDay.blocked_date).where(
                BlockedDay.doctor_id == doctor_id,
                BlockedDay.blocked_date >= start,
                BlockedDay.blocked_date <= end,
            )
        )
        return list(result.scalars().all())

    async def get_blocked_slots(
        self, doctor_id: uuid.UUID, start: date, end: date
    ) -> List[Tuple[date, Any, int]]:
        result = await self.execute(
            select(
                BlockedSlot.blocked_date,
                BlockedSlot.start_time,
                BlockedSlot.duration_minutes,
            ).where(
                BlockedSlot.doctor_id == doctor_id,
                BlockedSlot.blocked_date >= start,
                BlockedSlot.blocked_date <= end,
            )
        )
        return [(row[0], row[1], row[2]) for row in result.all()]


class ReminderRepository(BaseRepository):
    """Repository for reminder delivery records."""

    async def was_sent(self, appointment_id: uuid.UUID, reminder_type: ReminderType) -> bool:
        result = await self.execute(
            select(ReminderLog.id).where(
                ReminderLog.appointment_id == appointment_id,
                ReminderLog.reminder_type == reminder_type,
            )
        )
        return result.first() is not None

    async def record(
        self,
        appointment_id: uuid.UUID,
        reminder_type: ReminderType,
        sent_at: datetime,
    ) -> None:
        self.session.add(
            ReminderLog(
                appointment_id=appointment_id,
                reminder_type=reminder_type,
                sent_at=sent_at,
            )
        )
        await self.commit()


class TelegramSessionRepository(BaseRepository):
    """Repository for persisted conversation sessions."""

    _UPSERT_DIALECTS = ("postgresql", "sqlite")

    async def get(self, telegram_user_id: str) -> Optional[TelegramSession]:
        result = await self.execute(
            select(TelegramSession)
            .where(TelegramSession.telegram_user_id == telegram_user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def upsert(self, values: Dict[str, Any]) -> None:
        """
        Insert or replace the session row keyed by telegram_user_id.

        Args:
            values: Full column mapping, including created_at and updated_at
        """
        if self.dialect_name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif self.dialect_name == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            await self._merge(values)
            return

        statement = insert(TelegramSession).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[TelegramSession.telegram_user_id],
            set_={
                key: statement.excluded[key]
                for key in values
                if key not in ("telegram_user_id", "created_at")
            },
        )
        await self.execute(statement)
        await self.commit()

    async def _merge(self, values: Dict[str, Any]) -> None:
        existing = await self.get(values["telegram_user_id"])
        if existing is None:
            self.session.add(TelegramSession(**values))
        else:
            for key, value in values.items():
                if key != "created_at":
                    setattr(existing, key, value)
        await self.commit()

    async def delete(self, telegram_user_id: str) -> None:
        await self.execute(
            delete(TelegramSession).where(
                TelegramSession.telegram_user_id == telegram_user_id
            )
        )
        await self.commit()

    async def delete_inactive_since(self, cutoff: datetime) -> int:
        result = await self.execute(
            delete(TelegramSession).where(TelegramSession.updated_at < cutoff)
        )
        await self.commit()
        return result.rowcount or 0
