"""Tests for doctor decisions and their side effects."""

from datetime import datetime, time
from unittest.mock import AsyncMock, MagicMock, patch

import gspread
import httplib2
import pytest
import pytest_asyncio
from googleapiclient.errors import HttpError

from medbook.bot.texts import t
from medbook.db.models import AppointmentStatus, Language
from medbook.db.repository import AppointmentRepository
from medbook.services.dispatcher import AppointmentDispatcher
from medbook.config import settings
from medbook.services.google import (
    GoogleSyncError,
    GoogleWorkspaceClient,
    build_calendar_event,
    build_sheet_row,
)
from tests.conftest import (
    DOCTOR_CHAT_ID,
    PATIENT_USER_ID,
    TOMORROW,
    add_appointment,
    sent_to,
)

START = datetime.combine(TOMORROW, time(9, 0))


async def reload(db, appointment_id):
    return await AppointmentRepository(db).get_with_details(appointment_id)


class TestAppointmentDispatcher:
    """Test confirm, reject and cancel."""

    @pytest.fixture
    def google(self):
        google = MagicMock()
        google.enabled = True
        google.create_event = AsyncMock(return_value={"id": "evt-1"})
        google.delete_event = AsyncMock()
        google.append_row = AsyncMock()
        return google

    @pytest_asyncio.fixture
    async def appointment(self, db, doctor, services, patient):
        return await add_appointment(db, doctor, patient, START, service=services[0])

    @pytest.mark.asyncio
    async def test_confirm_notifies_patient(self, db, doctor, notifier, appointment):
        dispatcher = AppointmentDispatcher(db, notifier, doctor)

        assert await dispatcher.confirm(appointment.id, DOCTOR_CHAT_ID)

        assert (await reload(db, appointment.id)).status == AppointmentStatus.CONFIRMED
        patient_messages = sent_to(notifier, PATIENT_USER_ID)
        assert len(patient_messages) == 1
        assert doctor.display_name in patient_messages[0]

    @pytest.mark.asyncio
    async def test_confirm_applies_once(self, db, doctor, notifier, appointment):
        dispatcher = AppointmentDispatcher(db, notifier, doctor)

        assert await dispatcher.confirm(appointment.id, DOCTOR_CHAT_ID)
        assert not await dispatcher.confirm(appointment.id, DOCTOR_CHAT_ID)
        assert not await dispatcher.reject(appointment.id, DOCTOR_CHAT_ID)

        assert len(sent_to(notifier, PATIENT_USER_ID)) == 1
        assert sent_to(notifier, DOCTOR_CHAT_ID)[-1] == t(Language.RU, "already_processed")
        assert (await reload(db, appointment.id)).status == AppointmentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_reject(self, db, doctor, notifier, appointment):
        dispatcher = AppointmentDispatcher(db, notifier, doctor)

        assert await dispatcher.reject(appointment.id, DOCTOR_CHAT_ID, reason="Vacation")

        stored = await reload(db, appointment.id)
        assert stored.status == AppointmentStatus.REJECTED
        assert stored.rejection_reason == "Vacation"
        assert "Vacation" in sent_to(notifier, PATIENT_USER_ID)[0]

    @pytest.mark.asyncio
    async def test_other_chat_is_ignored(self, db, doctor, notifier, appointment):
        dispatcher = AppointmentDispatcher(db, notifier, doctor)

        assert not await dispatcher.confirm(appointment.id, "12345")

        assert (await reload(db, appointment.id)).status == AppointmentStatus.PENDING
        notifier.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_confirm_syncs_calendar_and_sheet(self, db, doctor, notifier, google, appointment):
        doctor.google_calendar_id = "calendar@example.com"
        doctor.google_sheet_id = "sheet-1"
        await db.commit()
        dispatcher = AppointmentDispatcher(db, notifier, doctor, google)

        assert await dispatcher.confirm(appointment.id, DOCTOR_CHAT_ID)

        google.create_event.assert_awaited_once()
        calendar_id, event = google.create_event.call_args.args
        assert calendar_id == "calendar@example.com"
        assert event["start"]["dateTime"] == "2026-01-13T09:00:00"
        assert event["end"]["dateTime"] == "2026-01-13T09:30:00"
        google.append_row.assert_awaited_once()
        assert (await reload(db, appointment.id)).google_calendar_event_id == "evt-1"

    @pytest.mark.asyncio
    async def test_google_failure_does_not_block(self, db, doctor, notifier, google, appointment):
        doctor.google_calendar_id = "calendar@example.com"
        doctor.google_sheet_id = "sheet-1"
        await db.commit()
        google.create_event.side_effect = GoogleSyncError("calendar down")
        google.append_row.side_effect = GoogleSyncError("sheets down")
        dispatcher = AppointmentDispatcher(db, notifier, doctor, google)

        assert await dispatcher.confirm(appointment.id, DOCTOR_CHAT_ID)

        stored = await reload(db, appointment.id)
        assert stored.status == AppointmentStatus.CONFIRMED
        assert stored.google_calendar_event_id is None
        assert len(sent_to(notifier, PATIENT_USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_failed_patient_notification_keeps_decision(self, db, doctor, notifier, appointment):
        notifier.send_message.return_value = False
        dispatcher = AppointmentDispatcher(db, notifier, doctor)

        assert await dispatcher.confirm(appointment.id, DOCTOR_CHAT_ID)

        assert (await reload(db, appointment.id)).status == AppointmentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_cancel_confirmed_removes_event(self, db, doctor, notifier, google, appointment):
        doctor.google_calendar_id = "calendar@example.com"
        await db.commit()
        dispatcher = AppointmentDispatcher(db, notifier, doctor, google)
        await dispatcher.confirm(appointment.id, DOCTOR_CHAT_ID)

        assert await dispatcher.cancel_by_doctor(appointment.id, reason="Sick leave")

        google.delete_event.assert_awaited_once_with("calendar@example.com", "evt-1")
        stored = await reload(db, appointment.id)
        assert stored.status == AppointmentStatus.CANCELLED_BY_DOCTOR
        assert stored.google_calendar_event_id is None
        assert "Sick leave" in sent_to(notifier, PATIENT_USER_ID)[-1]

    @pytest.mark.asyncio
    async def test_cancel_inactive(self, db, doctor, notifier, appointment):
        dispatcher = AppointmentDispatcher(db, notifier, doctor)
        await dispatcher.reject(appointment.id, DOCTOR_CHAT_ID)

        assert not await dispatcher.cancel_by_doctor(appointment.id)


class TestGooglePayloads:
    """Test calendar event and sheet row bodies."""

    @pytest.mark.asyncio
    async def test_custom_reason_in_description(self, db, doctor, patient):
        created = await add_appointment(db, doctor, patient, START)
        appointment = await reload(db, created.id)

        event = build_calendar_event(appointment)
        row = build_sheet_row(appointment)

        assert event["summary"] == "Anna Petrosyan - Checkup"
        assert "Reason: Checkup" in event["description"]
        assert "Phone: +37491123456" in event["description"]
        assert len(row) == 10
        assert row[1] == "Anna Petrosyan"
        assert row[4] == "13.01.2026"
        assert row[5] == "09:00"
        assert row[7] == "PENDING"
        assert row[9] == str(appointment.id)

    @pytest.mark.asyncio
    async def test_sheet_row_uses_local_booking_date(self, db, doctor, patient):
        repository = AppointmentRepository(db)
        created = await repository.add_pending(
            doctor_id=doctor.id,
            patient_id=patient.id,
            start_date_time=START,
            duration_minutes=30,
            custom_reason="Checkup",
            created_at=datetime(2026, 1, 12, 1, 30),
        )
        await repository.commit()

        row = build_sheet_row(await reload(db, created.id))

        assert row[0] == "12.01.2026"


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b'{"error": {"message": "failed"}}')


class TestGoogleWorkspaceClient:
    """Test the Calendar and Sheets calls through the client libraries."""

    @pytest.fixture
    def calendar(self):
        return MagicMock()

    @pytest.fixture
    def sheets(self):
        return MagicMock()

    @pytest.fixture
    def client(self, calendar, sheets):
        with patch(
            "medbook.services.google.service_account.Credentials.from_service_account_file"
        ), patch("medbook.services.google.AuthorizedHttp"), patch(
            "medbook.services.google.build", return_value=calendar
        ), patch(
            "medbook.services.google.gspread.authorize", return_value=sheets
        ):
            client = GoogleWorkspaceClient(credentials_file="service_account.json", timeout=5)
            yield client

    @pytest.mark.asyncio
    async def test_create_event(self, client, calendar):
        insert = calendar.events.return_value.insert
        insert.return_value.execute.return_value = {"id": "evt-9"}

        created = await client.create_event("calendar@example.com", {"summary": "Visit"})

        assert created["id"] == "evt-9"
        insert.assert_called_once_with(calendarId="calendar@example.com", body={"summary": "Visit"})

    @pytest.mark.asyncio
    async def test_create_event_http_error(self, client, calendar):
        calendar.events.return_value.insert.return_value.execute.side_effect = http_error(403)

        with pytest.raises(GoogleSyncError, match="403"):
            await client.create_event("calendar@example.com", {})

    @pytest.mark.asyncio
    async def test_create_event_timeout(self, client, calendar):
        calendar.events.return_value.insert.return_value.execute.side_effect = TimeoutError("timed out")

        with pytest.raises(GoogleSyncError):
            await client.create_event("calendar@example.com", {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_missing_event_is_done(self, client, calendar, status):
        delete = calendar.events.return_value.delete
        delete.return_value.execute.side_effect = http_error(status)

        await client.delete_event("calendar@example.com", "evt-1")

        delete.assert_called_once_with(calendarId="calendar@example.com", eventId="evt-1")

    @pytest.mark.asyncio
    async def test_delete_server_error(self, client, calendar):
        calendar.events.return_value.delete.return_value.execute.side_effect = http_error(500)

        with pytest.raises(GoogleSyncError, match="500"):
            await client.delete_event("calendar@example.com", "evt-1")

    @pytest.mark.asyncio
    async def test_append_row(self, client, sheets):
        await client.append_row("sheet-1", ["13.01.2026", "Anna Petrosyan", 30])

        sheets.open_by_key.assert_called_once_with("sheet-1")
        worksheet = sheets.open_by_key.return_value.sheet1
        worksheet.append_row.assert_called_once_with(
            ["13.01.2026", "Anna Petrosyan", 30],
            value_input_option="USER_ENTERED",
            insert_data_option="INSERT_ROWS",
        )
        sheets.set_timeout.assert_called_once_with(5)

    @pytest.mark.asyncio
    async def test_append_row_failure(self, client, sheets):
        sheets.open_by_key.side_effect = gspread.exceptions.GSpreadException("quota exceeded")

        with pytest.raises(GoogleSyncError):
            await client.append_row("sheet-1", ["x"])

    @pytest.mark.asyncio
    async def test_not_configured(self):
        with patch.object(settings, "google_service_account_json", None):
            client = GoogleWorkspaceClient()

            assert not client.enabled
            with pytest.raises(GoogleSyncError):
                await client.create_event("calendar@example.com", {})
