"""
Booking Flow Engine

Drives the Telegram booking dialogue: language, identification, service
(with optional free-text classification), date, time and confirmation.

Every inbound event loads the user's typed session, validates the event
against the current step, persists the next step and sends the matching
prompt. Input that does not belong to the current step never advances the
conversation; the current prompt is shown again instead.

The only write to the shared calendar happens in `BookingService.book`,
which re-validates the slot and the active-booking limit under a
per-doctor lock before inserting.
"""

import asyncio
import logging
import re
import uuid
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from medbook.bot import keyboards
from medbook.bot.callbacks import (
    BookingCallback,
    ConfirmCallback,
    DateCallback,
    LanguageCallback,
    ServiceAction,
    ServiceCallback,
    SkipPhoneCallback,
    TimeCallback,
)
from medbook.bot.texts import t
from medbook.config import settings
from medbook.db.models import Appointment, Doctor, Language, Service
from medbook.db.repository import (
    AppointmentRepository,
    DoctorRepository,
    PatientRepository,
    ServiceRepository,
    SlotConflictError,
)
from medbook.models.schemas import (
    BUTTON_STEPS,
    AwaitingConfirmation,
    AwaitingCustomReason,
    AwaitingDate,
    AwaitingLanguage,
    AwaitingName,
    AwaitingPhone,
    AwaitingService,
    AwaitingTime,
    ConversationState,
)
from medbook.services.availability import AvailabilityCalculator, load_availability
from medbook.services.classifier import ServiceClassifier
from medbook.services.notifier import TelegramNotifier
from medbook.services.session_store import SessionCorruptedError, SessionStore
from medbook.utils.timeutils import combine, format_datetime, local_now

logger = logging.getLogger(__name__)

ChatId = Union[int, str]

PHONE_PATTERN = re.compile(r"^\+?[0-9]{8,15}$")
MAX_REASON_LENGTH = 500


class BookingError(Exception):
    """Base exception for booking commit failures."""
    pass


class BookingLimitError(BookingError):
    """Patient already holds the maximum number of active bookings."""
    pass


class SlotUnavailableError(BookingError):
    """Requested slot is no longer free."""
    pass


_doctor_locks: Dict[uuid.UUID, asyncio.Lock] = {}


def doctor_lock(doctor_id: uuid.UUID) -> asyncio.Lock:
    """In-process lock serializing booking commits for one doctor."""
    lock = _doctor_locks.get(doctor_id)
    if lock is None:
        lock = _doctor_locks[doctor_id] = asyncio.Lock()
    return lock


def normalize_phone(raw: str) -> Optional[str]:
    """Strip separators and validate; returns None for invalid numbers."""
    cleaned = re.sub(r"[\s\-()]", "", raw or "")
    return cleaned if PHONE_PATTERN.match(cleaned) else None


class BookingService:
    """
    Appointment creation for a confirmed conversation.

    Args:
        db: Database session (the transaction is committed here)
        doctor: Doctor being booked
        clock: Returns the current local wall-clock time
        max_active: Active-booking limit per patient
    """

    def __init__(
        self,
        db: AsyncSession,
        doctor: Doctor,
        clock: Callable = local_now,
        max_active: Optional[int] = None,
    ):
        self.db = db
        self.doctor = doctor
        self.clock = clock
        self.max_active = max_active or settings.max_active_bookings
        self.appointments = AppointmentRepository(db)
        self.doctors = DoctorRepository(db)

    async def active_booking_count(self, patient_id: uuid.UUID) -> int:
        return await self.appointments.count_active_future(
            self.doctor.id, patient_id, self.clock()
        )

    async def limit_reached(self, patient_id: uuid.UUID) -> bool:
        return await self.active_booking_count(patient_id) >= self.max_active

    async def book(self, state: AwaitingConfirmation) -> Tuple[Appointment, bool]:
        """
        Create a PENDING appointment if the slot and limit still allow it.

        Returns:
            (appointment, created). created is False when the same patient's
            identical PENDING booking already exists, e.g. a duplicate
            delivery of the confirmation.

        Raises:
            BookingLimitError: Active-booking limit reached
            SlotUnavailableError: Slot taken, blocked or in the past
        """
        start = combine(state.selected_date, state.selected_time)

        async with doctor_lock(self.doctor.id):
            await self.doctors.lock(self.doctor.id)

            existing = await self.appointments.find_active_at(self.doctor.id, start)
            if (
                existing is not None
                and existing.patient_id == state.patient_id
                and existing.duration_minutes == state.duration_minutes
                and existing.service_id == state.service_id
            ):
                await self.db.commit()
                logger.info(f"Duplicate confirmation for appointment {existing.id}, ignoring")
                return existing, False

            if await self.limit_reached(state.patient_id):
                await self.db.commit()
                raise BookingLimitError(f"Patient {state.patient_id} reached the booking limit")

            calculator = await load_availability(
                self.db, self.doctor, state.selected_date, state.selected_date
            )
            if start <= self.clock() or not calculator.is_slot_available(
                state.selected_date, state.selected_time, state.duration_minutes
            ):
                await self.db.commit()
                raise SlotUnavailableError(f"Slot {start} is no longer available")

            try:
                appointment = await self.appointments.add_pending(
                    doctor_id=self.doctor.id,
                    patient_id=state.patient_id,
                    start_date_time=start,
                    duration_minutes=state.duration_minutes,
                    service_id=state.service_id,
                    custom_reason=state.custom_reason,
                    created_at=self.clock(),
                )
            except SlotConflictError as e:
                await self.db.refresh(self.doctor)
                raise SlotUnavailableError(str(e)) from e

            await self.appointments.commit()

        logger.info(
            f"Created appointment {appointment.id} for patient {state.patient_id} at {start}"
        )
        return appointment, True


class BookingFlow:
    """
    Conversation controller for one inbound Telegram event.

    Args:
        db: Database session
        notifier: Outbound Telegram transport
        doctor: The practice's doctor
        classifier: Optional free-text service classifier
        clock: Returns the current local wall-clock time
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: TelegramNotifier,
        doctor: Doctor,
        classifier: Optional[ServiceClassifier] = None,
        clock: Callable = local_now,
    ):
        self.db = db
        self.notifier = notifier
        self.doctor = doctor
        self.classifier = classifier
        self.clock = clock
        self.store = SessionStore(db, clock=clock)
        self.booking = BookingService(db, doctor, clock=clock)
        self.patients = PatientRepository(db)
        self.services = ServiceRepository(db)

    # Entry points

    async def handle_start(self, user_id: str, chat_id: ChatId) -> None:
        """Hard reset: forget the session and ask for the language again."""
        await self.store.reset(user_id)
        state = AwaitingLanguage(user_id=user_id)
        await self.store.update(state)
        logger.info(f"User {user_id} restarted the conversation")
        await self._render(state, chat_id)

    async def handle_text(self, user_id: str, chat_id: ChatId, text: str) -> None:
        loaded = await self._load(user_id, chat_id)
        if loaded is None:
            return
        state, created = loaded
        text = (text or "").strip()

        if isinstance(state, AwaitingName):
            await self._on_name(state, chat_id, text)
        elif isinstance(state, AwaitingPhone):
            phone = normalize_phone(text)
            if phone is None:
                await self.notifier.send_message(chat_id, t(state.language, "invalid_phone"))
                return
            await self._accept_phone(state, chat_id, phone)
        elif isinstance(state, AwaitingService):
            if created or not text:
                await self._show_services(state, chat_id)
            elif await self._refuse_if_limit_reached(state, chat_id):
                return
            else:
                await self._accept_reason(state, chat_id, text)
        elif isinstance(state, AwaitingCustomReason):
            if not text:
                await self._render(state, chat_id)
                return
            await self._accept_reason(state, chat_id, text)
        elif state.step in BUTTON_STEPS:
            await self._render(state, chat_id, notice=t(state.language, "use_buttons"))
        else:
            await self._render(state, chat_id)

    async def handle_contact(self, user_id: str, chat_id: ChatId, phone_number: str) -> None:
        loaded = await self._load(user_id, chat_id)
        if loaded is None:
            return
        state, _ = loaded

        if isinstance(state, AwaitingPhone):
            cleaned = re.sub(r"[\s\-()]", "", phone_number or "")
            if cleaned and not cleaned.startswith("+"):
                cleaned = f"+{cleaned}"
            await self._accept_phone(state, chat_id, normalize_phone(cleaned) or cleaned)
        elif state.step in BUTTON_STEPS:
            await self._render(state, chat_id, notice=t(state.language, "use_buttons"))
        else:
            await self._render(state, chat_id)

    async def handle_callback(
        self, user_id: str, chat_id: ChatId, payload: BookingCallback
    ) -> None:
        """Route an inline-button press; buttons from another step only re-render."""
        loaded = await self._load(user_id, chat_id)
        if loaded is None:
            return
        state, _ = loaded

        if isinstance(payload, LanguageCallback) and isinstance(state, AwaitingLanguage):
            await self._on_language(state, chat_id, payload.language)
        elif isinstance(payload, SkipPhoneCallback) and isinstance(state, AwaitingPhone):
            await self._accept_phone(state, chat_id, None)
        elif isinstance(payload, ServiceCallback) and isinstance(state, AwaitingService):
            await self._on_service(state, chat_id, payload)
        elif isinstance(payload, DateCallback) and isinstance(state, AwaitingDate):
            await self._on_date(state, chat_id, payload)
        elif isinstance(payload, TimeCallback) and isinstance(state, AwaitingTime):
            await self._on_time(state, chat_id, payload)
        elif isinstance(payload, ConfirmCallback) and isinstance(state, AwaitingConfirmation):
            await self._on_confirm(state, chat_id, payload.accepted)
        else:
            logger.info(f"User {user_id} pressed {type(payload).__name__} at {state.step}")
            await self._render(state, chat_id)

    # Steps

    async def _on_language(
        self, state: AwaitingLanguage, chat_id: ChatId, language: Language
    ) -> None:
        await self._advance(state, AwaitingName(user_id=state.user_id, language=language), chat_id)

    async def _on_name(self, state: AwaitingName, chat_id: ChatId, text: str) -> None:
        parts = text.split()
        if not parts or len(parts[0]) < 2:
            await self.notifier.send_message(chat_id, t(state.language, "name_too_short"))
            return

        patient = await self.patients.upsert_identity(
            telegram_user_id=state.user_id,
            first_name=parts[0][:100],
            last_name=" ".join(parts[1:])[:100] or None,
            language=state.language,
        )
        await self._advance(
            state,
            AwaitingPhone(user_id=state.user_id, language=state.language, patient_id=patient.id),
            chat_id,
        )

    async def _accept_phone(
        self, state: AwaitingPhone, chat_id: ChatId, phone: Optional[str]
    ) -> None:
        if phone:
            await self.patients.update_phone(state.patient_id, phone)
        await self.notifier.send_message(
            chat_id, t(state.language, "phone_saved"), reply_markup=keyboards.remove_keyboard()
        )
        await self._advance(state, AwaitingService(**state.patient_fields()), chat_id)

    async def _on_service(
        self, state: AwaitingService, chat_id: ChatId, payload: ServiceCallback
    ) -> None:
        if await self._refuse_if_limit_reached(state, chat_id):
            return

        if payload.action == ServiceAction.PICK and payload.service_id is not None:
            service = await self.services.get_active(self.doctor.id, payload.service_id)
            if service is None:
                await self._show_services(state, chat_id)
                return
            await self._advance(
                state,
                AwaitingDate(
                    **state.patient_fields(),
                    service_id=service.id,
                    custom_reason=state.pending_reason,
                    duration_minutes=service.default_duration_minutes,
                ),
                chat_id,
            )
        elif payload.action == ServiceAction.KEEP and state.pending_reason:
            await self._advance(
                state,
                AwaitingDate(
                    **state.patient_fields(),
                    custom_reason=state.pending_reason,
                    duration_minutes=settings.default_custom_duration_minutes,
                ),
                chat_id,
            )
        else:
            await self._advance(state, AwaitingCustomReason(**state.patient_fields()), chat_id)

    async def _accept_reason(
        self,
        state: Union[AwaitingService, AwaitingCustomReason],
        chat_id: ChatId,
        text: str,
    ) -> None:
        reason = text[:MAX_REASON_LENGTH]

        if self.classifier is None:
            await self._advance(
                state,
                AwaitingDate(
                    **state.patient_fields(),
                    custom_reason=reason,
                    duration_minutes=settings.default_custom_duration_minutes,
                ),
                chat_id,
            )
            return

        catalog = await self.services.list_active(self.doctor.id)
        result = await self.classifier.classify(reason, catalog)
        if result is None:
            await self._advance(
                state,
                AwaitingService(**state.patient_fields(), pending_reason=reason),
                chat_id,
            )
            return

        service = next(s for s in catalog if s.id == result.service_id)
        await self._advance(
            state,
            AwaitingDate(
                **state.patient_fields(),
                service_id=service.id,
                custom_reason=reason,
                duration_minutes=result.duration_minutes,
            ),
            chat_id,
            notice=t(state.language, "classifier_recognized", service=service.name_for(state.language)),
        )

    async def _on_date(self, state: AwaitingDate, chat_id: ChatId, payload: DateCallback) -> None:
        day = payload.selected
        calculator = await self._calculator()
        if day not in self._dates(calculator):
            await self._render(state, chat_id)
            return

        if not calculator.available_time_slots(day, state.duration_minutes):
            await self._render(state, chat_id, notice=t(state.language, "no_slots"))
            return

        await self._advance(
            state, AwaitingTime(**state.booking_fields(), selected_date=day), chat_id
        )

    async def _on_time(self, state: AwaitingTime, chat_id: ChatId, payload: TimeCallback) -> None:
        selected = payload.selected
        calculator = await self._calculator()
        slots = calculator.available_time_slots(state.selected_date, state.duration_minutes)
        if selected not in slots:
            await self._slot_lost(state, chat_id, slots)
            return

        await self._advance(
            state,
            AwaitingConfirmation(
                **state.booking_fields(),
                selected_date=state.selected_date,
                selected_time=selected,
            ),
            chat_id,
        )

    async def _on_confirm(
        self, state: AwaitingConfirmation, chat_id: ChatId, accepted: bool
    ) -> None:
        if not accepted:
            await self._advance(state, AwaitingService(**state.patient_fields()), chat_id)
            return

        try:
            appointment, created = await self.booking.book(state)
        except BookingLimitError:
            menu = AwaitingService(**state.patient_fields())
            await self.store.update(menu)
            await self._render(menu, chat_id)
            return
        except SlotUnavailableError as e:
            logger.info(f"Booking for user {state.user_id} lost its slot: {e}")
            calculator = await self._calculator()
            slots = calculator.available_time_slots(state.selected_date, state.duration_minutes)
            await self._slot_lost(state, chat_id, slots)
            return

        await self.store.reset(state.user_id)
        if not created:
            return

        await self.notifier.send_message(chat_id, t(state.language, "booking_sent"))
        await self._notify_doctor(appointment, state)

    # Helpers

    async def _load(
        self, user_id: str, chat_id: ChatId
    ) -> Optional[Tuple[ConversationState, bool]]:
        try:
            return await self.store.load(user_id)
        except SessionCorruptedError as e:
            logger.warning(f"Resetting corrupted session: {e}")
            await self.handle_start(user_id, chat_id)
            return None

    async def _advance(
        self,
        previous: ConversationState,
        state: ConversationState,
        chat_id: ChatId,
        notice: Optional[str] = None,
    ) -> None:
        await self.store.update(state)
        logger.info(f"User {state.user_id}: {previous.step} -> {state.step}")
        await self._render(state, chat_id, notice=notice)

    async def _refuse_if_limit_reached(
        self, state: Union[AwaitingService, AwaitingCustomReason], chat_id: ChatId
    ) -> bool:
        if not await self.booking.limit_reached(state.patient_id):
            return False
        logger.info(f"Patient {state.patient_id} is at the active booking limit")
        await self.notifier.send_message(
            chat_id, t(state.language, "limit_reached", limit=self.booking.max_active)
        )
        return True

    async def _slot_lost(
        self,
        state: Union[AwaitingTime, AwaitingConfirmation],
        chat_id: ChatId,
        slots: List,
    ) -> None:
        """Return to the time picker for the same date, or to the date picker."""
        if slots:
            await self._advance(
                state,
                AwaitingTime(**state.booking_fields(), selected_date=state.selected_date),
                chat_id,
                notice=t(state.language, "slot_taken"),
            )
        else:
            await self._advance(
                state,
                AwaitingDate(**state.booking_fields()),
                chat_id,
                notice=t(state.language, "no_slots"),
            )

    async def _calculator(self) -> AvailabilityCalculator:
        today = self.clock().date()
        return await load_availability(
            self.db,
            self.doctor,
            today,
            today + timedelta(days=settings.booking_horizon_days),
        )

    def _dates(self, calculator: AvailabilityCalculator) -> List:
        return calculator.available_dates(
            self.clock().date(),
            horizon_days=settings.booking_horizon_days,
            max_results=settings.booking_max_dates,
        )

    async def _service_label(
        self, service_id: Optional[uuid.UUID], custom_reason: Optional[str], language: Language
    ) -> str:
        if service_id is not None:
            service: Optional[Service] = await self.services.get_by_id(service_id)
            if service is not None:
                return service.name_for(language)
        return f"{t(language, 'custom_service')}: {custom_reason}" if custom_reason else t(
            language, "custom_service"
        )

    async def _show_services(self, state: AwaitingService, chat_id: ChatId) -> None:
        if await self._refuse_if_limit_reached(state, chat_id):
            return
        catalog = await self.services.list_active(self.doctor.id)
        prompt_key = "classifier_unsure" if state.pending_reason else "choose_service"
        await self.notifier.send_message(
            chat_id,
            t(state.language, prompt_key),
            reply_markup=keyboards.service_keyboard(
                catalog,
                state.language,
                offer_keep_other=state.pending_reason is not None,
                show_prices=self.doctor.show_prices,
            ),
        )

    async def _render(
        self, state: ConversationState, chat_id: ChatId, notice: Optional[str] = None
    ) -> None:
        """Send the prompt (and keyboard) of the current step."""
        if isinstance(state, AwaitingLanguage):
            welcome = f"{t(Language.ARM, 'welcome')}\n{t(Language.RU, 'welcome')}"
            await self.notifier.send_message(chat_id, welcome, keyboards.language_keyboard())
            return

        language = state.language
        if notice and not isinstance(state, (AwaitingDate, AwaitingTime)):
            await self.notifier.send_message(chat_id, notice)

        if isinstance(state, AwaitingName):
            await self.notifier.send_message(chat_id, t(language, "enter_name"))
        elif isinstance(state, AwaitingPhone):
            await self.notifier.send_message(
                chat_id, t(language, "share_phone"), keyboards.phone_request_keyboard(language)
            )
            await self.notifier.send_message(
                chat_id, t(language, "skip_hint"), keyboards.skip_phone_keyboard(language)
            )
        elif isinstance(state, AwaitingService):
            await self._show_services(state, chat_id)
        elif isinstance(state, AwaitingCustomReason):
            await self.notifier.send_message(chat_id, t(language, "enter_custom_reason"))
        elif isinstance(state, AwaitingDate):
            dates = self._dates(await self._calculator())
            prefix = f"{notice}\n\n" if notice else ""
            if not dates:
                await self.notifier.send_message(chat_id, prefix + t(language, "no_dates"))
                return
            await self.notifier.send_message(
                chat_id,
                prefix + t(language, "choose_date"),
                keyboards.date_keyboard(dates, language),
            )
        elif isinstance(state, AwaitingTime):
            calculator = await self._calculator()
            slots = calculator.available_time_slots(state.selected_date, state.duration_minutes)
            if not slots:
                back = AwaitingDate(**state.booking_fields())
                await self._advance(state, back, chat_id, notice=t(language, "no_slots"))
                return
            prefix = f"{notice}\n\n" if notice else ""
            await self.notifier.send_message(
                chat_id, prefix + t(language, "choose_time"), keyboards.time_keyboard(slots)
            )
        elif isinstance(state, AwaitingConfirmation):
            label = await self._service_label(state.service_id, state.custom_reason, language)
            summary = t(
                language,
                "confirm_booking",
                service_label=t(language, "service_label"),
                service=label,
                datetime_label=t(language, "datetime_label"),
                datetime=format_datetime(
                    combine(state.selected_date, state.selected_time), language
                ),
            )
            await self.notifier.send_message(
                chat_id, summary, keyboards.confirmation_keyboard(language)
            )

    async def _notify_doctor(self, appointment: Appointment, state: AwaitingConfirmation) -> None:
        if not self.doctor.telegram_chat_id:
            logger.warning("Doctor chat id not configured, skipping new booking notification")
            return

        language = self.doctor.interface_language
        patient = await self.patients.get_by_id(state.patient_id)
        text = t(
            language,
            "doctor_new",
            patient=patient.full_name if patient else "-",
            phone=(patient.phone_number if patient else None) or "-",
            service=await self._service_label(state.service_id, state.custom_reason, language),
            datetime=format_datetime(appointment.start_date_time, language),
        )
        sent = await self.notifier.send_message(
            self.doctor.telegram_chat_id,
            text,
            keyboards.decision_keyboard(appointment.id, language),
        )
        if not sent:
            logger.error(f"Doctor was not notified about appointment {appointment.id}")
