"""
Session Store

Durable per-user conversation state for the booking dialogue, keyed by the
Telegram user id. Typed states are mapped onto the flat
`telegram_sessions` row and back.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from medbook.config import settings
from medbook.db.models import TelegramSession
from medbook.db.repository import PatientRepository, TelegramSessionRepository
from medbook.models.schemas import (
    STEPS,
    AwaitingLanguage,
    AwaitingService,
    ConversationState,
    conversation_state_adapter,
)
from medbook.utils.timeutils import local_now

logger = logging.getLogger(__name__)


class SessionCorruptedError(Exception):
    """Raised when a stored session cannot be mapped to a known step."""
    pass


_STATE_COLUMNS = (
    "language",
    "patient_id",
    "service_id",
    "custom_reason",
    "selected_date",
    "selected_time",
    "duration_minutes",
)


def state_to_row(state: ConversationState) -> Dict[str, Any]:
    """Flatten a typed state into telegram_sessions column values."""
    data = state.model_dump()
    row = {column: None for column in _STATE_COLUMNS}
    row["telegram_user_id"] = data.pop("user_id")
    row["step"] = data.pop("step")
    if "pending_reason" in data:
        row["custom_reason"] = data.pop("pending_reason")
    for column, value in data.items():
        row[column] = value
    if row["language"] is not None:
        row["language"] = row["language"].value
    return row


def row_to_state(row: TelegramSession) -> ConversationState:
    """
    Rebuild the typed state from a stored row.

    Raises:
        SessionCorruptedError: Unknown step or fields missing for that step
    """
    if row.step not in STEPS:
        raise SessionCorruptedError(f"Unknown session step: {row.step!r}")

    data: Dict[str, Any] = {"user_id": row.telegram_user_id, "step": row.step}
    for column in _STATE_COLUMNS:
        value = getattr(row, column)
        if value is not None:
            data[column] = value
    if row.step == "awaiting_service" and "custom_reason" in data:
        data["pending_reason"] = data.pop("custom_reason")

    try:
        return conversation_state_adapter.validate_python(data)
    except ValidationError as e:
        raise SessionCorruptedError(
            f"Session for user {row.telegram_user_id} is invalid at step {row.step}: {e}"
        ) from e


class SessionStore:
    """
    Get-or-create, update and reset of conversation sessions.

    Sessions idle for longer than the TTL are treated as absent.
    """

    def __init__(
        self,
        db: AsyncSession,
        ttl_hours: Optional[int] = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.db = db
        self.sessions = TelegramSessionRepository(db)
        self.patients = PatientRepository(db)
        self.ttl = timedelta(hours=ttl_hours or settings.session_ttl_hours)
        self.clock = clock

    async def load(self, user_id: str) -> Tuple[ConversationState, bool]:
        """
        Return the user's session and whether it was synthesized by this call.

        A known patient without a session starts at the service menu with
        their stored language; anyone else starts at language selection.
        """
        row = await self.sessions.get(user_id)
        if row is not None and row.updated_at < self.clock() - self.ttl:
            logger.info(f"Session for user {user_id} expired at step {row.step}")
            await self.sessions.delete(user_id)
            row = None

        if row is not None:
            return row_to_state(row), False

        patient = await self.patients.get_by_telegram_id(user_id)
        if patient is not None:
            state: ConversationState = AwaitingService(
                user_id=user_id,
                language=patient.language,
                patient_id=patient.id,
            )
        else:
            state = AwaitingLanguage(user_id=user_id)

        await self.update(state)
        logger.info(f"Created session for user {user_id} at {state.step}")
        return state, True

    async def get(self, user_id: str) -> ConversationState:
        state, _ = await self.load(user_id)
        return state

    async def update(self, state: ConversationState) -> None:
        now = self.clock()
        values = state_to_row(state)
        values["created_at"] = now
        values["updated_at"] = now
        await self.sessions.upsert(values)
        logger.debug(f"Session for user {state.user_id} saved at {state.step}")

    async def reset(self, user_id: str) -> None:
        await self.sessions.delete(user_id)
        logger.debug(f"Session for user {user_id} deleted")

    async def purge_expired(self) -> int:
        removed = await self.sessions.delete_inactive_since(self.clock() - self.ttl)
        if removed:
            logger.info(f"Purged {removed} expired sessions")
        return removed
