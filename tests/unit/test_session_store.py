"""Tests for persisted conversation sessions."""

import uuid
from datetime import date, time, timedelta

import pytest
from sqlalchemy import select

from medbook.db.models import Language, TelegramSession
from medbook.models.schemas import (
    AwaitingConfirmation,
    AwaitingLanguage,
    AwaitingName,
    AwaitingService,
)
from medbook.services.session_store import (
    SessionCorruptedError,
    SessionStore,
    row_to_state,
    state_to_row,
)
from tests.conftest import NOW, PATIENT_USER_ID, fixed_clock


class TestStateMapping:
    """Test typed state <-> row mapping."""

    def test_pending_reason_uses_custom_reason_column(self):
        state = AwaitingService(
            user_id=PATIENT_USER_ID,
            language=Language.ARM,
            patient_id=uuid.uuid4(),
            pending_reason="tooth ache",
        )
        row = state_to_row(state)

        assert row["step"] == "awaiting_service"
        assert row["language"] == "ARM"
        assert row["custom_reason"] == "tooth ache"
        assert row["selected_date"] is None

    def test_row_round_trip(self):
        state = AwaitingConfirmation(
            user_id=PATIENT_USER_ID,
            language=Language.RU,
            patient_id=uuid.uuid4(),
            custom_reason="Checkup",
            duration_minutes=30,
            selected_date=date(2026, 1, 13),
            selected_time=time(9, 30),
        )
        row = TelegramSession(**state_to_row(state), created_at=NOW, updated_at=NOW)

        assert row_to_state(row) == state

    def test_unknown_step(self):
        row = TelegramSession(telegram_user_id="1", step="awaiting_payment")

        with pytest.raises(SessionCorruptedError):
            row_to_state(row)

    def test_missing_fields(self):
        row = TelegramSession(telegram_user_id="1", step="awaiting_time", language="RU")

        with pytest.raises(SessionCorruptedError):
            row_to_state(row)


class TestSessionStore:
    """Test session get-or-create, expiry and reset."""

    @pytest.fixture
    def store(self, db):
        return SessionStore(db, ttl_hours=24, clock=fixed_clock)

    @pytest.mark.asyncio
    async def test_new_user_starts_at_language(self, store):
        state, created = await store.load("42")

        assert created
        assert state == AwaitingLanguage(user_id="42")

        state, created = await store.load("42")
        assert not created

    @pytest.mark.asyncio
    async def test_known_patient_starts_at_service(self, store, patient):
        state, created = await store.load(PATIENT_USER_ID)

        assert created
        assert isinstance(state, AwaitingService)
        assert state.patient_id == patient.id
        assert state.language == Language.RU

    @pytest.mark.asyncio
    async def test_update_replaces_state(self, store):
        await store.update(AwaitingLanguage(user_id="42"))
        await store.update(AwaitingName(user_id="42", language=Language.ARM))

        assert await store.get("42") == AwaitingName(user_id="42", language=Language.ARM)

    @pytest.mark.asyncio
    async def test_expired_session_is_replaced(self, db):
        await SessionStore(db, clock=fixed_clock).update(
            AwaitingName(user_id="42", language=Language.RU)
        )
        later = SessionStore(db, ttl_hours=24, clock=lambda: NOW + timedelta(hours=25))

        state, created = await later.load("42")

        assert created
        assert isinstance(state, AwaitingLanguage)

    @pytest.mark.asyncio
    async def test_corrupted_session_raises(self, db, store):
        db.add(
            TelegramSession(
                telegram_user_id="42", step="bogus", created_at=NOW, updated_at=NOW
            )
        )
        await db.commit()

        with pytest.raises(SessionCorruptedError):
            await store.load("42")

    @pytest.mark.asyncio
    async def test_reset(self, db, store):
        await store.update(AwaitingLanguage(user_id="42"))
        await store.reset("42")

        result = await db.execute(select(TelegramSession))
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_purge_expired(self, db):
        old = SessionStore(db, clock=lambda: NOW - timedelta(hours=30))
        await old.update(AwaitingLanguage(user_id="1"))
        store = SessionStore(db, ttl_hours=24, clock=fixed_clock)
        await store.update(AwaitingLanguage(user_id="2"))

        assert await store.purge_expired() == 1
        result = await db.execute(select(TelegramSession.telegram_user_id))
        assert result.scalars().all() == ["2"]
