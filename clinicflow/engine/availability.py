"""
Availability Resolver — what hours a clinician works on a given date.

Resolution order:
  1. the clinic's closed weekday is always closed
  2. a date override for that date, verbatim (even when disabled)
  3. the weekly template entry for that weekday
  4. the default day (09:00–18:00)

Never fails on missing data: an unknown clinician or an empty schedule
resolves to default hours.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

from clinicflow import settings
from clinicflow.engine.models import (
    WEEKDAY_NAMES,
    AvailabilitySchedule,
    Clinician,
    DayAvailability,
    TimeRange,
)
from clinicflow.engine.store import ClinicStore
from clinicflow.engine.validators import parse_date, validate_range

logger = logging.getLogger("engine.availability")


class AvailabilityValidationError(ValueError):
    """Malformed availability edit (bad weekday, date or time range)."""


def is_closed_weekday(day: date) -> bool:
    return day.weekday() == settings.CLOSED_WEEKDAY


def resolve_schedule(schedule: AvailabilitySchedule | None, day: date) -> DayAvailability:
    """Apply the resolution order to one schedule."""
    if is_closed_weekday(day):
        return DayAvailability.closed()
    if schedule is None:
        return DayAvailability.default()

    override = schedule.date_overrides.get(day.isoformat())
    if override is not None:
        return override.model_copy(deep=True)

    template = schedule.weekly.get(WEEKDAY_NAMES[day.weekday()])
    if template is not None:
        return template.model_copy(deep=True)

    return DayAvailability.default()


class AvailabilityResolver:
    """Reads and edits clinician availability held in the clinician directory."""

    def __init__(self, store: ClinicStore) -> None:
        self._store = store

    def resolve(self, clinician_id: str, day: date | str) -> DayAvailability:
        target = self._require_date(day)
        clinician = self._store.find("clinicians", clinician_id)
        if clinician is None:
            logger.debug("Unknown clinician %s — default hours", clinician_id)
            return resolve_schedule(None, target)
        return resolve_schedule(clinician.availability, target)

    # ── Editing ──

    def set_weekly_day(
        self,
        clinician_id: str,
        weekday: str,
        enabled: bool,
        ranges: Iterable[tuple[str, str]] = (),
    ) -> Clinician:
        key = weekday.strip().lower()
        if key not in WEEKDAY_NAMES:
            raise AvailabilityValidationError(f"Unknown weekday '{weekday}'")

        clinician = self._store.get_clinician(clinician_id)
        clinician.availability.weekly[key] = self._build_day(enabled, ranges)
        self._store.put_clinician(clinician)
        logger.info("Weekly availability for %s on %s updated", clinician_id, key)
        return clinician

    def set_date_override(
        self,
        clinician_id: str,
        day: date | str,
        enabled: bool,
        ranges: Iterable[tuple[str, str]] = (),
    ) -> Clinician:
        target = self._require_date(day)
        clinician = self._store.get_clinician(clinician_id)
        clinician.availability.date_overrides[target.isoformat()] = self._build_day(enabled, ranges)
        self._store.put_clinician(clinician)
        logger.info("Availability override for %s on %s set", clinician_id, target)
        return clinician

    def remove_date_override(self, clinician_id: str, day: date | str) -> bool:
        target = self._require_date(day)
        clinician = self._store.get_clinician(clinician_id)
        removed = clinician.availability.date_overrides.pop(target.isoformat(), None)
        if removed is None:
            return False
        self._store.put_clinician(clinician)
        return True

    def copy_date_override(
        self,
        clinician_id: str,
        source: date | str,
        targets: Iterable[date | str],
    ) -> list[date]:
        """
        Copy the resolved schedule of ``source`` onto every target date.

        Targets on the closed weekday are skipped. Returns the dates written.
        """
        source_day = self._require_date(source)
        template = self.resolve(clinician_id, source_day)

        clinician = self._store.get_clinician(clinician_id)
        written: list[date] = []
        for raw in targets:
            target = self._require_date(raw)
            if is_closed_weekday(target) or target == source_day:
                continue
            clinician.availability.date_overrides[target.isoformat()] = template.model_copy(deep=True)
            written.append(target)

        if written:
            self._store.put_clinician(clinician)
        logger.info(
            "Copied availability of %s on %s to %d date(s)",
            clinician_id, source_day, len(written),
        )
        return written

    # ── Internal ──

    @staticmethod
    def _require_date(value: date | str) -> date:
        parsed = parse_date(value)
        if parsed is None:
            raise AvailabilityValidationError(f"Invalid date '{value}'")
        return parsed

    @staticmethod
    def _build_day(enabled: bool, ranges: Iterable[tuple[str, str]]) -> DayAvailability:
        built = []
        for start, end in ranges:
            if not validate_range(start, end):
                raise AvailabilityValidationError(f"Invalid time range {start}-{end}")
            built.append(TimeRange(start=start, end=end))
        return DayAvailability(enabled=enabled, ranges=built)

