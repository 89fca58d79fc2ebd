"""
Availability Calculator

Computes bookable dates and start times from the doctor's working hours,
lunch break, blocked days, blocked slots and existing appointments.

Everything here is a pure function of its inputs; loading those inputs from
the database is done by `load_availability`.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from medbook.db.models import Doctor
from medbook.db.repository import AppointmentRepository, BlockedTimeRepository
from medbook.utils.timeutils import from_minutes, to_minutes, weekday_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Interval:
    """Half-open interval [start, end) in minutes since midnight."""

    start: int
    end: int

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    @classmethod
    def from_start(cls, start: time, duration_minutes: int) -> "Interval":
        begin = to_minutes(start)
        return cls(begin, begin + duration_minutes)


@dataclass(frozen=True)
class WorkSchedule:
    """Weekly working pattern of the doctor."""

    work_days: FrozenSet[str]
    start: time
    end: time
    slot_step_minutes: int
    lunch_start: Optional[time] = None
    lunch_end: Optional[time] = None

    @classmethod
    def from_doctor(cls, doctor: Doctor) -> "WorkSchedule":
        return cls(
            work_days=frozenset(day.upper() for day in (doctor.work_days or [])),
            start=doctor.work_day_start_time,
            end=doctor.work_day_end_time,
            slot_step_minutes=doctor.slot_step_minutes,
            lunch_start=doctor.lunch_start_time,
            lunch_end=doctor.lunch_end_time,
        )

    @property
    def lunch(self) -> Optional[Interval]:
        if self.lunch_start is None or self.lunch_end is None:
            return None
        if to_minutes(self.lunch_end) <= to_minutes(self.lunch_start):
            return None
        return Interval(to_minutes(self.lunch_start), to_minutes(self.lunch_end))

    def is_work_day(self, day: date) -> bool:
        return weekday_code(day) in self.work_days


@dataclass
class AvailabilityCalculator:
    """
    Bookable dates and slots for one doctor.

    Args:
        schedule: Working pattern
        blocked_days: Dates closed entirely
        blocked_slots: Closed intervals keyed by date
        busy: Intervals of PENDING/CONFIRMED appointments keyed by date
    """

    schedule: WorkSchedule
    blocked_days: FrozenSet[date] = frozenset()
    blocked_slots: Dict[date, List[Interval]] = field(default_factory=dict)
    busy: Dict[date, List[Interval]] = field(default_factory=dict)

    def available_dates(
        self,
        today: date,
        horizon_days: int = 21,
        max_results: int = 14,
    ) -> List[date]:
        """
        Dates open for booking, starting tomorrow.

        Walks at most `horizon_days` days forward and stops early once
        `max_results` dates are collected.
        """
        dates: List[date] = []
        for offset in range(1, horizon_days + 1):
            day = today + timedelta(days=offset)
            if not self.schedule.is_work_day(day) or day in self.blocked_days:
                continue
            dates.append(day)
            if len(dates) >= max_results:
                break
        return dates

    def available_time_slots(self, day: date, duration_minutes: int) -> List[time]:
        """
        Free start times on `day` for an appointment of `duration_minutes`.

        A candidate is kept only if the whole appointment fits before the
        end of the working day and it touches neither lunch, a blocked slot
        nor an existing appointment.
        """
        if duration_minutes <= 0 or self.schedule.slot_step_minutes <= 0:
            return []
        if not self.schedule.is_work_day(day) or day in self.blocked_days:
            return []

        taken = list(self.blocked_slots.get(day, [])) + list(self.busy.get(day, []))
        lunch = self.schedule.lunch
        if lunch is not None:
            taken.append(lunch)

        slots: List[time] = []
        day_end = to_minutes(self.schedule.end)
        current = to_minutes(self.schedule.start)
        while current + duration_minutes <= day_end:
            candidate = Interval(current, current + duration_minutes)
            if not any(candidate.overlaps(other) for other in taken):
                slots.append(from_minutes(current))
            current += self.schedule.slot_step_minutes
        return slots

    def is_slot_available(self, day: date, at: time, duration_minutes: int) -> bool:
        return at.replace(second=0, microsecond=0) in self.available_time_slots(
            day, duration_minutes
        )


def _group_by_date(items: Iterable[tuple]) -> Dict[date, List[Interval]]:
    grouped: Dict[date, List[Interval]] = {}
    for day, start, duration in items:
        grouped.setdefault(day, []).append(Interval.from_start(start, duration))
    return grouped


async def load_availability(
    db: AsyncSession,
    doctor: Doctor,
    start: date,
    end: date,
) -> AvailabilityCalculator:
    """
    Build a calculator from the database for dates in [start, end].

    Args:
        db: Database session
        doctor: Doctor whose calendar is checked
        start: First date of interest
        end: Last date of interest (inclusive)
    """
    blocked_repo = BlockedTimeRepository(db)
    appointment_repo = AppointmentRepository(db)

    blocked_days = await blocked_repo.get_blocked_days(doctor.id, start, end)
    blocked_slots = await blocked_repo.get_blocked_slots(doctor.id, start, end)
    busy = await appointment_repo.get_busy_intervals(
        doctor.id,
        datetime.combine(start, time.min),
        datetime.combine(end + timedelta(days=1), time.min),
    )

    calculator = AvailabilityCalculator(
        schedule=WorkSchedule.from_doctor(doctor),
        blocked_days=frozenset(blocked_days),
        blocked_slots=_group_by_date(blocked_slots),
        busy=_group_by_date(
            (starts_at.date(), starts_at.time(), duration) for starts_at, duration in busy
        ),
    )
    logger.debug(
        f"Loaded availability for doctor {doctor.id} between {start} and {end}: "
        f"{len(blocked_days)} blocked days, {len(blocked_slots)} blocked slots, "
        f"{len(busy)} busy appointments"
    )
    return calculator
