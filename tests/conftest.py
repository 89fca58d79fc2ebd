"""Shared fixtures: in-memory database, seeded practice, recording notifier."""

from datetime import datetime, time, timedelta
from typing import List
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from medbook.db.models import (
    Appointment,
    AppointmentStatus,
    Base,
    Doctor,
    Language,
    Patient,
    Service,
)
from medbook.services.notifier import TelegramNotifier

# Monday
NOW = datetime(2026, 1, 12, 10, 0)
TOMORROW = NOW.date() + timedelta(days=1)

DOCTOR_CHAT_ID = "999"
PATIENT_USER_ID = "100"


def fixed_clock() -> datetime:
    return NOW


def sent_texts(notifier: AsyncMock) -> List[str]:
    """Texts passed to notifier.send_message, in order."""
    return [call.args[1] for call in notifier.send_message.call_args_list]


def sent_to(notifier: AsyncMock, chat_id) -> List[str]:
    return [
        call.args[1]
        for call in notifier.send_message.call_args_list
        if str(call.args[0]) == str(chat_id)
    ]


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def doctor(db) -> Doctor:
    doctor = Doctor(
        first_name="Aram",
        last_name="Hakobyan",
        interface_language=Language.RU,
        work_days=["MON", "TUE", "WED", "THU", "FRI"],
        work_day_start_time=time(9, 0),
        work_day_end_time=time(18, 0),
        slot_step_minutes=15,
        lunch_start_time=time(13, 0),
        lunch_end_time=time(14, 0),
        telegram_chat_id=DOCTOR_CHAT_ID,
    )
    db.add(doctor)
    await db.commit()
    return doctor


@pytest_asyncio.fixture
async def services(db, doctor) -> List[Service]:
    consultation = Service(
        doctor_id=doctor.id,
        name_arm="Խորհրդատվություն",
        name_ru="Консультация",
        default_duration_minutes=30,
        sort_order=1,
        price_min=10000,
        price_max=15000,
    )
    cleaning = Service(
        doctor_id=doctor.id,
        name_arm="Մաքրում",
        name_ru="Чистка",
        default_duration_minutes=60,
        sort_order=2,
    )
    retired = Service(
        doctor_id=doctor.id,
        name_arm="Հին",
        name_ru="Старая услуга",
        default_duration_minutes=30,
        is_active=False,
        sort_order=3,
    )
    db.add_all([consultation, cleaning, retired])
    await db.commit()
    return [consultation, cleaning, retired]


@pytest_asyncio.fixture
async def patient(db) -> Patient:
    patient = Patient(
        telegram_user_id=PATIENT_USER_ID,
        first_name="Anna",
        last_name="Petrosyan",
        phone_number="+37491123456",
        language=Language.RU,
    )
    db.add(patient)
    await db.commit()
    return patient


@pytest.fixture
def notifier() -> AsyncMock:
    notifier = AsyncMock(spec=TelegramNotifier)
    notifier.send_message.return_value = True
    notifier.answer_callback.return_value = True
    notifier.clear_buttons.return_value = True
    return notifier


async def add_appointment(
    db: AsyncSession,
    doctor: Doctor,
    patient: Patient,
    start: datetime,
    duration_minutes: int = 30,
    status: AppointmentStatus = AppointmentStatus.PENDING,
    service: Service = None,
) -> Appointment:
    appointment = Appointment(
        doctor_id=doctor.id,
        patient_id=patient.id,
        service_id=service.id if service else None,
        custom_reason=None if service else "Checkup",
        start_date_time=start,
        duration_minutes=duration_minutes,
        status=status,
    )
    db.add(appointment)
    await db.commit()
    return appointment
