"""
Tests for slot generation — alignment, overnight ranges, ordering, and
informational occupancy.
"""

from datetime import date

import pytest

from clinicflow import settings
from clinicflow.engine.models import Appointment, AppointmentStatus, DayAvailability, TimeRange
from clinicflow.engine.slots import generate

from conftest import SUNDAY, WEDNESDAY


def day(*ranges: tuple[str, str], enabled: bool = True) -> DayAvailability:
    return DayAvailability(enabled=enabled, ranges=[TimeRange(start=s, end=e) for s, e in ranges])


def appt(time: str, duration: int = 30, clinician: str = "DR-1", on: date = WEDNESDAY, **kw) -> Appointment:
    return Appointment(
        patient_id=kw.pop("patient_id", "PT-1"),
        clinician_id=clinician,
        date=on,
        time=time,
        duration_minutes=duration,
        **kw,
    )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Expansion
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestExpansion:

    def test_starts_strictly_before_range_end(self):
        slots = generate(day(("09:00", "11:00")), [])
        assert [s.time for s in slots] == ["09:00", "09:30", "10:00", "10:30"]

    def test_partial_last_slot_still_emitted(self):
        slots = generate(day(("09:00", "10:15")), [])
        assert [s.time for s in slots] == ["09:00", "09:30", "10:00"]

    def test_custom_width(self):
        slots = generate(day(("09:00", "10:00")), [], slot_width_minutes=15)
        assert len(slots) == 4

    def test_disabled_day_is_empty(self):
        assert generate(day(("09:00", "12:00"), enabled=False), []) == []

    def test_no_ranges_is_empty(self):
        assert generate(day(), []) == []

    def test_overnight_range_wraps(self):
        slots = generate(day(("23:00", "01:00")), [])
        assert sorted(s.time for s in slots) == ["00:00", "00:30", "23:00", "23:30"]

    def test_overlapping_ranges_deduplicated_and_sorted(self):
        slots = generate(day(("10:00", "12:00"), ("09:00", "11:00")), [])
        times = [s.time for s in slots]
        assert times == sorted(times)
        assert len(times) == len(set(times))
        assert times[0] == "09:00" and times[-1] == "11:30"

    def test_non_positive_width_rejected(self):
        with pytest.raises(ValueError):
            generate(day(("09:00", "10:00")), [], slot_width_minutes=0)

    def test_closed_weekday_yields_no_slots_even_with_override(self, engine):
        engine.availability.set_date_override("DR-1", SUNDAY, True, [("09:00", "17:00")])
        assert engine.slots.slots_for("DR-1", SUNDAY) == []

    def test_disabled_override_yields_no_slots(self, engine):
        monday = date(2024, 5, 6)
        engine.availability.set_weekly_day("DR-1", "monday", True, [("09:00", "12:00")])
        engine.availability.set_date_override("DR-1", monday, False)
        assert engine.availability.resolve("DR-1", monday).enabled is False
        assert engine.slots.slots_for("DR-1", monday) == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Occupancy
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestOccupancy:

    def _counts(self, slots):
        return {s.time: s.occupant_count for s in slots}

    def test_single_appointment_occupies_one_slot(self):
        counts = self._counts(generate(day(("09:00", "11:00")), [appt("10:00")]))
        assert counts == {"09:00": 0, "09:30": 0, "10:00": 1, "10:30": 0}

    def test_long_appointment_spans_ceil_slots(self):
        counts = self._counts(generate(day(("09:00", "11:00")), [appt("09:00", duration=45)]))
        assert counts["09:00"] == 1
        assert counts["09:30"] == 1
        assert counts["10:00"] == 0

    def test_off_grid_start_occupies_containing_slot_only(self):
        counts = self._counts(generate(day(("10:00", "12:00")), [appt("10:15", duration=30)]))
        assert counts == {"10:00": 1, "10:30": 0, "11:00": 0, "11:30": 0}
        assert sum(counts.values()) == 1

    def test_off_grid_long_appointment_spans_from_containing_slot(self):
        counts = self._counts(generate(day(("10:00", "12:00")), [appt("10:15", duration=45)]))
        assert counts == {"10:00": 1, "10:30": 1, "11:00": 0, "11:30": 0}

    def test_slots_are_shared(self):
        existing = [appt("10:00", patient_id="PT-1"), appt("10:00", patient_id="PT-2")]
        counts = self._counts(generate(day(("09:00", "11:00")), existing))
        assert counts["10:00"] == 2

    def test_cancelled_and_unscheduled_ignored(self):
        existing = [
            appt("10:00", status=AppointmentStatus.CANCELLED),
            Appointment(patient_id="PT-3", clinician_id="DR-1"),
        ]
        counts = self._counts(generate(day(("09:00", "11:00")), existing))
        assert counts["10:00"] == 0

    def test_filters_by_clinician_and_date(self):
        existing = [appt("10:00", clinician="DR-2"), appt("10:00", on=date(2024, 5, 2))]
        slots = generate(day(("09:00", "11:00")), existing, clinician_id="DR-1", day=WEDNESDAY)
        assert self._counts(slots)["10:00"] == 0

    def test_capacity_flag_only_when_configured(self, monkeypatch):
        existing = [appt("10:00", patient_id="PT-1"), appt("10:00", patient_id="PT-2")]
        slots = generate(day(("10:00", "11:00")), existing)
        assert not any(s.at_capacity for s in slots)

        monkeypatch.setattr(settings, "MAX_OCCUPANTS_PER_SLOT", 2)
        slots = generate(day(("10:00", "11:00")), existing)
        assert [s.time for s in slots] == ["10:00", "10:30"]
        assert slots[0].at_capacity is True
        assert slots[1].at_capacity is False

    def test_slots_for_reads_store(self, engine, add_patient, book):
        add_patient("PT-100")
        book("PT-100", "DR-2", WEDNESDAY, "14:00")
        slots = engine.slots.slots_for("DR-2", WEDNESDAY)
        assert slots[0].time == "13:00"
        assert {s.time: s.occupant_count for s in slots}["14:00"] == 1
