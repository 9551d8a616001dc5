"""
Slot Generator — expands a day's availability into fixed-width slots.

Slots are not exclusive: several patients may share one (group sessions),
so ``occupant_count`` is informational.  ``at_capacity`` is only set when
MAX_OCCUPANTS_PER_SLOT is configured; slots are never removed for it.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Iterable, Optional

from pydantic import BaseModel

from clinicflow import settings
from clinicflow.engine.availability import AvailabilityResolver
from clinicflow.engine.models import Appointment, AppointmentStatus, DayAvailability
from clinicflow.engine.store import ClinicStore
from clinicflow.engine.validators import MINUTES_PER_DAY, minutes_to_time, time_to_minutes

logger = logging.getLogger("engine.slots")


class Slot(BaseModel):
    time: str
    occupant_count: int = 0
    at_capacity: bool = False


def _occupies(appointment: Appointment, clinician_id: Optional[str], day: Optional[date]) -> bool:
    if appointment.status == AppointmentStatus.CANCELLED or not appointment.is_scheduled:
        return False
    if clinician_id is not None and appointment.clinician_id != clinician_id:
        return False
    if day is not None and appointment.date != day:
        return False
    return True


def _slot_starts(availability: DayAvailability, width: int) -> list[int]:
    """Minutes-after-midnight of every slot start (wrapped past midnight)."""
    starts: set[int] = set()
    for time_range in availability.ranges:
        begin = time_to_minutes(time_range.start)
        end = time_to_minutes(time_range.end)
        if end < begin:
            end += MINUTES_PER_DAY
        cursor = begin
        while cursor < end:
            starts.add(cursor % MINUTES_PER_DAY)
            cursor += width
    return sorted(starts)


def _anchor(starts: list[int], a_start: int, width: int) -> int:
    """Start of the slot containing ``a_start`` (itself when off-grid)."""
    for start in reversed(starts):
        if start <= a_start < start + width:
            return start
    return a_start


def generate(
    day_availability: DayAvailability,
    existing: Iterable[Appointment],
    slot_width_minutes: int = settings.SLOT_INTERVAL_MINUTES,
    clinician_id: str | None = None,
    day: date | None = None,
) -> list[Slot]:
    """
    Slots for one day, ordered by time with no duplicate starts.

    ``existing`` may hold appointments for other clinicians or dates;
    pass ``clinician_id``/``day`` to restrict occupancy to the ones that
    matter.  An appointment occupies the slot containing its start time
    plus the following slots, ``ceil(max(width, duration) / width)`` in all.
    """
    if slot_width_minutes <= 0:
        raise ValueError("slot_width_minutes must be positive")
    if not day_availability.enabled or not day_availability.ranges:
        return []

    width = slot_width_minutes
    starts = _slot_starts(day_availability, width)
    booked = []
    for a in existing:
        if not _occupies(a, clinician_id, day):
            continue
        first = _anchor(starts, time_to_minutes(a.time), width)
        blocks = math.ceil(max(width, a.duration_minutes) / width)
        booked.append((first, first + blocks * width))

    capacity = settings.MAX_OCCUPANTS_PER_SLOT
    slots = []
    for start in starts:
        count = sum(1 for first, end in booked if first <= start < end)
        slots.append(
            Slot(
                time=minutes_to_time(start),
                occupant_count=count,
                at_capacity=capacity is not None and count >= capacity,
            )
        )
    return slots


class SlotGenerator:
    """Slots for a clinician's date, read from the store."""

    def __init__(self, store: ClinicStore, resolver: AvailabilityResolver) -> None:
        self._store = store
        self._resolver = resolver

    def slots_for(
        self,
        clinician_id: str,
        day: date,
        slot_width_minutes: int = settings.SLOT_INTERVAL_MINUTES,
    ) -> list[Slot]:
        availability = self._resolver.resolve(clinician_id, day)
        existing = self._store.appointments(clinician_id=clinician_id, day=day)
        slots = generate(availability, existing, slot_width_minutes, clinician_id, day)
        logger.debug("%d slot(s) for %s on %s", len(slots), clinician_id, day)
        return slots
