"""
Tests for availability resolution (closed weekday, overrides, weekly
template, default hours) and availability editing.
"""

from datetime import date

import pytest

from clinicflow.engine.availability import (
    AvailabilityValidationError,
    resolve_schedule,
)
from clinicflow.engine.models import AvailabilitySchedule, DayAvailability, TimeRange
from clinicflow.engine.store import RecordNotFoundError

from conftest import MONDAY, SUNDAY, WEDNESDAY, make_clinician


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Resolution order
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestResolution:

    def test_unknown_clinician_gets_default_hours(self, engine):
        day = engine.availability.resolve("DR-NOBODY", WEDNESDAY)
        assert day.enabled is True
        assert [(r.start, r.end) for r in day.ranges] == [("09:00", "18:00")]

    def test_unconfigured_weekday_gets_default_hours(self, engine):
        # DR-1 has no weekly template at all
        day = engine.availability.resolve("DR-1", MONDAY)
        assert [(r.start, r.end) for r in day.ranges] == [("09:00", "18:00")]

    def test_weekly_template_used(self, engine):
        day = engine.availability.resolve("DR-2", WEDNESDAY)
        assert [(r.start, r.end) for r in day.ranges] == [("13:00", "17:00")]

    def test_override_wins_over_template(self, engine):
        engine.availability.set_date_override("DR-2", WEDNESDAY, True, [("08:00", "10:00")])
        day = engine.availability.resolve("DR-2", WEDNESDAY)
        assert [(r.start, r.end) for r in day.ranges] == [("08:00", "10:00")]

    def test_disabled_override_returned_verbatim(self, engine):
        engine.availability.set_date_override("DR-2", WEDNESDAY, False)
        day = engine.availability.resolve("DR-2", WEDNESDAY)
        assert day.enabled is False

    def test_closed_weekday_ignores_override(self, engine):
        engine.availability.set_date_override("DR-1", SUNDAY, True, [("09:00", "12:00")])
        day = engine.availability.resolve("DR-1", SUNDAY)
        assert day.enabled is False
        assert day.ranges == []

    def test_closed_weekday_is_configurable(self, engine, monkeypatch):
        from clinicflow import settings
        monkeypatch.setattr(settings, "CLOSED_WEEKDAY", 0)
        assert engine.availability.resolve("DR-1", MONDAY).enabled is False
        assert engine.availability.resolve("DR-1", SUNDAY).enabled is True

    def test_resolve_accepts_iso_string(self, engine):
        day = engine.availability.resolve("DR-2", "2024-05-01")
        assert day.ranges[0].start == "13:00"

    def test_resolve_schedule_without_schedule(self):
        assert resolve_schedule(None, WEDNESDAY).enabled is True
        assert resolve_schedule(None, SUNDAY).enabled is False

    def test_returned_day_is_a_copy(self, engine):
        day = engine.availability.resolve("DR-2", WEDNESDAY)
        day.ranges.clear()
        assert engine.availability.resolve("DR-2", WEDNESDAY).ranges


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Editing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestEditing:

    def test_set_weekly_day(self, engine):
        engine.availability.set_weekly_day("DR-1", "Monday", True, [("09:00", "12:00")])
        day = engine.availability.resolve("DR-1", MONDAY)
        assert [(r.start, r.end) for r in day.ranges] == [("09:00", "12:00")]

    def test_set_weekly_day_rejects_unknown_weekday(self, engine):
        with pytest.raises(AvailabilityValidationError):
            engine.availability.set_weekly_day("DR-1", "funday", True, [("09:00", "12:00")])

    def test_invalid_range_rejected(self, engine):
        with pytest.raises(AvailabilityValidationError):
            engine.availability.set_date_override("DR-1", WEDNESDAY, True, [("10:00", "10:00")])

    def test_invalid_date_rejected(self, engine):
        with pytest.raises(AvailabilityValidationError):
            engine.availability.set_date_override("DR-1", "someday", True, [])

    def test_editing_unknown_clinician(self, engine):
        with pytest.raises(RecordNotFoundError):
            engine.availability.set_date_override("DR-NOBODY", WEDNESDAY, False)

    def test_remove_override(self, engine):
        engine.availability.set_date_override("DR-2", WEDNESDAY, False)
        assert engine.availability.remove_date_override("DR-2", WEDNESDAY) is True
        assert engine.availability.resolve("DR-2", WEDNESDAY).enabled is True
        assert engine.availability.remove_date_override("DR-2", WEDNESDAY) is False

    def test_copy_override_skips_closed_weekday(self, engine):
        engine.availability.set_date_override("DR-1", WEDNESDAY, True, [("07:00", "09:00")])
        written = engine.availability.copy_date_override(
            "DR-1", WEDNESDAY, [date(2024, 5, 2), SUNDAY, MONDAY]
        )
        assert written == [date(2024, 5, 2), MONDAY]
        for target in written:
            ranges = engine.availability.resolve("DR-1", target).ranges
            assert [(r.start, r.end) for r in ranges] == [("07:00", "09:00")]

    def test_weekday_keys_normalized(self):
        schedule = AvailabilitySchedule(
            weekly={"Monday": DayAvailability(ranges=[TimeRange(start="9:00", end="12:00")])}
        )
        assert "monday" in schedule.weekly
        assert schedule.weekly["monday"].ranges[0].start == "09:00"

    def test_make_clinician_closes_empty_days(self):
        clinician = make_clinician(tuesday=[])
        assert clinician.availability.weekly["tuesday"].enabled is False
