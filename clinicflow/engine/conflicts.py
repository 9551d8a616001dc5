"""
Conflict Checker — advisory double-booking detection.

Two appointments conflict when they share clinician and date, neither is
cancelled, and their half-open ``[time, time + duration)`` intervals
intersect.  Touching end/start is not a conflict.
"""

from __future__ import annotations

import datetime as dt
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from clinicflow import settings
from clinicflow.engine.models import Appointment, AppointmentStatus
from clinicflow.engine.validators import time_to_minutes


class ConflictCandidate(BaseModel):
    """A proposed booking (or the new position of an existing appointment)."""

    clinician_id: str
    date: dt.date
    time: str
    duration_minutes: int = Field(default=settings.DEFAULT_DURATION_MINUTES, gt=0)
    # Set when moving an existing appointment so it does not clash with itself
    appointment_id: Optional[str] = None


class ConflictResult(BaseModel):
    has_conflict: bool = False
    conflicting_appointments: list[Appointment] = Field(default_factory=list)


def overlaps(start_a: int, duration_a: int, start_b: int, duration_b: int) -> bool:
    return start_a < start_b + duration_b and start_b < start_a + duration_a


def check(existing: Iterable[Appointment], candidate: ConflictCandidate) -> ConflictResult:
    start = time_to_minutes(candidate.time)
    conflicting = []
    for appointment in existing:
        if candidate.appointment_id and appointment.appointment_id == candidate.appointment_id:
            continue
        if appointment.status == AppointmentStatus.CANCELLED or not appointment.is_scheduled:
            continue
        if appointment.clinician_id != candidate.clinician_id or appointment.date != candidate.date:
            continue
        if overlaps(
            start, candidate.duration_minutes,
            time_to_minutes(appointment.time), appointment.duration_minutes,
        ):
            conflicting.append(appointment)

    conflicting.sort(key=lambda a: a.time)
    return ConflictResult(has_conflict=bool(conflicting), conflicting_appointments=conflicting)
