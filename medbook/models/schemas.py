"""
Pydantic Schemas

Typed conversation states for the booking dialogue, classifier results and
admin API payloads.

Each conversation step is its own model carrying exactly the fields that
are known at that point, discriminated by `step`.
"""

import uuid
from datetime import date, time
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from medbook.db.models import AppointmentStatus, Language


class _State(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str


class _WithLanguage(_State):
    language: Language


class _WithPatient(_WithLanguage):
    patient_id: uuid.UUID

    def patient_fields(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "language": self.language,
            "patient_id": self.patient_id,
        }


class _WithBooking(_WithPatient):
    service_id: Optional[uuid.UUID] = None
    custom_reason: Optional[str] = None
    duration_minutes: int = Field(gt=0)

    def booking_fields(self) -> Dict[str, Any]:
        return {
            **self.patient_fields(),
            "service_id": self.service_id,
            "custom_reason": self.custom_reason,
            "duration_minutes": self.duration_minutes,
        }


class AwaitingLanguage(_State):
    step: Literal["awaiting_language"] = "awaiting_language"


class AwaitingName(_WithLanguage):
    step: Literal["awaiting_name"] = "awaiting_name"


class AwaitingPhone(_WithPatient):
    step: Literal["awaiting_phone"] = "awaiting_phone"


class AwaitingService(_WithPatient):
    """Service menu. `pending_reason` holds free text the classifier could not map."""

    step: Literal["awaiting_service"] = "awaiting_service"
    pending_reason: Optional[str] = None


class AwaitingCustomReason(_WithPatient):
    step: Literal["awaiting_custom_reason"] = "awaiting_custom_reason"


class AwaitingDate(_WithBooking):
    step: Literal["awaiting_date"] = "awaiting_date"


class AwaitingTime(_WithBooking):
    step: Literal["awaiting_time"] = "awaiting_time"
    selected_date: date


class AwaitingConfirmation(_WithBooking):
    step: Literal["awaiting_confirmation"] = "awaiting_confirmation"
    selected_date: date
    selected_time: time


ConversationState = Annotated[
    Union[
        AwaitingLanguage,
        AwaitingName,
        AwaitingPhone,
        AwaitingService,
        AwaitingCustomReason,
        AwaitingDate,
        AwaitingTime,
        AwaitingConfirmation,
    ],
    Field(discriminator="step"),
]

conversation_state_adapter: TypeAdapter = TypeAdapter(ConversationState)

STEPS = frozenset(
    {
        "awaiting_language",
        "awaiting_name",
        "awaiting_phone",
        "awaiting_service",
        "awaiting_custom_reason",
        "awaiting_date",
        "awaiting_time",
        "awaiting_confirmation",
    }
)

# Steps driven only by inline buttons
BUTTON_STEPS = frozenset({"awaiting_date", "awaiting_time", "awaiting_confirmation"})


class ClassificationResult(BaseModel):
    """Catalog service the classifier mapped a free-text reason to."""

    service_id: uuid.UUID
    duration_minutes: int
    confidence: float = Field(ge=0.0, le=1.0)


class CancelAppointmentRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AppointmentActionResponse(BaseModel):
    appointment_id: uuid.UUID
    applied: bool
    status: Optional[AppointmentStatus] = None


class ReminderRunResponse(BaseModel):
    sent: int
    purged_sessions: int = 0
