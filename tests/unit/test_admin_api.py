"""Tests for the admin API."""

import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from medbook.api import appointments as api
from medbook.config import settings
from medbook.db.models import AppointmentStatus
from medbook.db.session import get_db_session

TOKEN = "admin-token"
APPOINTMENT_ID = uuid.uuid4()


async def fake_session():
    yield MagicMock()


class TestAdminApi:
    """Test admin endpoints with repositories mocked out."""

    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.include_router(api.router)
        app.dependency_overrides[get_db_session] = fake_session
        app.dependency_overrides[api.get_notifier] = lambda: MagicMock()
        with patch.object(settings, "admin_api_token", TOKEN):
            yield TestClient(app)

    @pytest.fixture
    def repositories(self):
        doctor_repo = MagicMock()
        doctor_repo.get_primary = AsyncMock(return_value=SimpleNamespace(id=uuid.uuid4()))
        appointment_repo = MagicMock()
        appointment_repo.get_with_details = AsyncMock(
            return_value=SimpleNamespace(status=AppointmentStatus.CANCELLED_BY_DOCTOR)
        )
        with patch.object(api, "DoctorRepository", return_value=doctor_repo), patch.object(
            api, "AppointmentRepository", return_value=appointment_repo
        ):
            yield doctor_repo, appointment_repo

    def test_wrong_token(self, client):
        response = client.post(
            f"/api/appointments/{APPOINTMENT_ID}/cancel", headers={"X-Admin-Token": "nope"}
        )

        assert response.status_code == 403

    def test_disabled_without_token(self, client):
        with patch.object(settings, "admin_api_token", None):
            response = client.post(
                f"/api/appointments/{APPOINTMENT_ID}/cancel", headers={"X-Admin-Token": TOKEN}
            )

        assert response.status_code == 503

    def test_cancel(self, client, repositories):
        dispatcher = MagicMock()
        dispatcher.cancel_by_doctor = AsyncMock(return_value=True)

        with patch.object(api, "AppointmentDispatcher", return_value=dispatcher), patch.object(
            api, "get_google_client", return_value=None
        ):
            response = client.post(
                f"/api/appointments/{APPOINTMENT_ID}/cancel",
                json={"reason": "Sick leave"},
                headers={"X-Admin-Token": TOKEN},
            )

        assert response.status_code == 200
        assert response.json() == {
            "appointment_id": str(APPOINTMENT_ID),
            "applied": True,
            "status": "CANCELLED_BY_DOCTOR",
        }
        dispatcher.cancel_by_doctor.assert_awaited_once_with(APPOINTMENT_ID, "Sick leave")

    def test_cancel_unknown_appointment(self, client, repositories):
        _, appointment_repo = repositories
        appointment_repo.get_with_details.return_value = None

        response = client.post(
            f"/api/appointments/{APPOINTMENT_ID}/cancel", headers={"X-Admin-Token": TOKEN}
        )

        assert response.status_code == 404

    def test_run_reminders(self, client):
        reminder_service = MagicMock()
        reminder_service.run_once = AsyncMock(return_value=2)
        store = MagicMock()
        store.purge_expired = AsyncMock(return_value=5)

        with patch.object(api, "ReminderService", return_value=reminder_service), patch.object(
            api, "SessionStore", return_value=store
        ):
            response = client.post("/api/reminders/run", headers={"X-Admin-Token": TOKEN})

        assert response.status_code == 200
        assert response.json() == {"sent": 2, "purged_sessions": 5}
