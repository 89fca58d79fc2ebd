"""
Database Models

SQLAlchemy ORM models for the single-doctor booking practice.

All timestamps describing the appointment calendar (start_date_time,
blocked dates and times) are naive local wall-clock values in the business
timezone.
"""

import uuid
from datetime import date, datetime, time
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    Enum as SQLEnum,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


class Language(str, Enum):
    """Patient-facing interface language."""
    ARM = "ARM"
    RU = "RU"


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    CANCELLED_BY_DOCTOR = "CANCELLED_BY_DOCTOR"


# Statuses that occupy the calendar and count toward the booking limit
ACTIVE_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)


class ReminderType(str, Enum):
    """Reminder kinds sent before a confirmed appointment."""
    BEFORE_24H = "BEFORE_24H"
    BEFORE_2H = "BEFORE_2H"


class Doctor(Base, TimestampMixin):
    """
    Doctor profile and practice configuration.

    The practice has a single doctor; working hours, integrations and the
    classifier feature flag live here.
    """

    __tablename__ = "doctor"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), default="")
    interface_language: Mapped[Language] = mapped_column(
        SQLEnum(Language, name="language"), default=Language.RU
    )
    work_days: Mapped[List[str]] = mapped_column(
        JSON, default=lambda: ["MON", "TUE", "WED", "THU", "FRI"]
    )
    work_day_start_time: Mapped[time] = mapped_column(Time, default=time(9, 0))
    work_day_end_time: Mapped[time] = mapped_column(Time, default=time(18, 0))
    slot_step_minutes: Mapped[int] = mapped_column(Integer, default=15)
    lunch_start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    lunch_end_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    google_calendar_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    google_sheet_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    show_prices: Mapped[bool] = mapped_column(Boolean, default=False)
    ai_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    llm_api_base_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    llm_api_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    llm_model_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Service(Base, TimestampMixin):
    """Bookable service from the doctor's catalog."""

    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    doctor_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("doctor.id"), nullable=False)
    name_arm: Mapped[str] = mapped_column(String(255), nullable=False)
    name_ru: Mapped[str] = mapped_column(String(255), nullable=False)
    default_duration_minutes: Mapped[int] = mapped_column(Integer, default=30)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    price_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price_max: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    def name_for(self, language: Optional[Language]) -> str:
        return self.name_arm if language == Language.ARM else self.name_ru


class Patient(Base, TimestampMixin):
    """Patient identified by their Telegram user id."""

    __tablename__ = "patients"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    telegram_user_id: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True, index=True
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    language: Mapped[Language] = mapped_column(
        SQLEnum(Language, name="language"), default=Language.RU
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name or ''}".strip()


class Appointment(Base, TimestampMixin):
    """
    Appointment on the doctor's calendar.

    For one doctor no two PENDING/CONFIRMED appointments may overlap. The
    partial unique index below guards the exact-start case at the database
    level; the booking flow enforces the interval rule at commit time.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointments_active_slot",
            "doctor_id",
            "start_date_time",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'CONFIRMED')"),
            sqlite_where=text("status IN ('PENDING', 'CONFIRMED')"),
        ),
        Index("ix_appointments_patient_status", "patient_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    doctor_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("doctor.id"), nullable=False)
    patient_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("patients.id"), nullable=False)
    service_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("services.id"), nullable=True
    )
    custom_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_date_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(AppointmentStatus, name="appointment_status"),
        default=AppointmentStatus.PENDING,
        nullable=False,
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(32), default="Telegram")
    google_calendar_event_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    patient: Mapped[Patient] = relationship(lazy="raise")
    service: Mapped[Optional[Service]] = relationship(lazy="raise")


class BlockedDay(Base, TimestampMixin):
    """Whole day closed for booking."""

    __tablename__ = "blocked_days"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    doctor_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("doctor.id"), nullable=False)
    blocked_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class BlockedSlot(Base, TimestampMixin):
    """Closed interval within a working day."""

    __tablename__ = "blocked_slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    doctor_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("doctor.id"), nullable=False)
    blocked_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class TelegramSession(Base):
    """Persisted conversation state, one row per Telegram user."""

    __tablename__ = "telegram_sessions"

    telegram_user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    step: Mapped[str] = mapped_column(String(40), nullable=False)
    language: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    patient_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    service_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    custom_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    selected_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    selected_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ReminderLog(Base):
    """Record of a reminder already delivered for an appointment."""

    __tablename__ = "reminder_logs"
    __table_args__ = (
        UniqueConstraint("appointment_id", "reminder_type", name="uq_reminder_once"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("appointments.id"), nullable=False
    )
    reminder_type: Mapped[ReminderType] = mapped_column(
        SQLEnum(ReminderType, name="reminder_type"), nullable=False
    )
    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
