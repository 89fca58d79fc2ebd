"""Tests for appointment reminders."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from medbook.db.models import AppointmentStatus, ReminderLog, ReminderType
from medbook.services.reminders import ReminderService, reminder_type_for
from tests.conftest import NOW, PATIENT_USER_ID, add_appointment, fixed_clock, sent_to


class TestReminderWindows:
    """Test mapping time-to-appointment onto reminder kinds."""

    @pytest.mark.parametrize(
        "hours,expected",
        [
            (24, ReminderType.BEFORE_24H),
            (23, ReminderType.BEFORE_24H),
            (2, ReminderType.BEFORE_2H),
            (1.5, ReminderType.BEFORE_2H),
            (12, None),
            (1, None),
            (30, None),
        ],
    )
    def test_reminder_type_for(self, hours, expected):
        assert reminder_type_for(hours) == expected


class TestReminderService:
    """Test reminder passes against the database."""

    @pytest.mark.asyncio
    async def test_day_before_reminder_sent_once(self, db, doctor, services, patient, notifier):
        await add_appointment(
            db,
            doctor,
            patient,
            NOW + timedelta(hours=24),
            status=AppointmentStatus.CONFIRMED,
            service=services[0],
        )
        service = ReminderService(db, notifier, clock=fixed_clock)

        assert await service.run_once() == 1
        assert await service.run_once() == 0

        messages = sent_to(notifier, PATIENT_USER_ID)
        assert len(messages) == 1
        assert "Консультация" in messages[0]
        logs = (await db.execute(select(ReminderLog))).scalars().all()
        assert [log.reminder_type for log in logs] == [ReminderType.BEFORE_24H]

    @pytest.mark.asyncio
    async def test_two_hour_reminder(self, db, doctor, patient, notifier):
        await add_appointment(
            db, doctor, patient, NOW + timedelta(hours=2), status=AppointmentStatus.CONFIRMED
        )

        assert await ReminderService(db, notifier, clock=fixed_clock).run_once() == 1

        logs = (await db.execute(select(ReminderLog))).scalars().all()
        assert logs[0].reminder_type == ReminderType.BEFORE_2H

    @pytest.mark.asyncio
    async def test_pending_appointments_are_skipped(self, db, doctor, patient, notifier):
        await add_appointment(db, doctor, patient, NOW + timedelta(hours=24))

        assert await ReminderService(db, notifier, clock=fixed_clock).run_once() == 0
        notifier.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_send_is_retried(self, db, doctor, patient, notifier):
        await add_appointment(
            db, doctor, patient, NOW + timedelta(hours=24), status=AppointmentStatus.CONFIRMED
        )
        service = ReminderService(db, notifier, clock=fixed_clock)

        notifier.send_message.return_value = False
        assert await service.run_once() == 0

        notifier.send_message.return_value = True
        assert await service.run_once() == 1
