"""
Shared fixtures for the ClinicFlow test suite.
Everything runs against the in-memory store; no GCS access.
"""

from datetime import date

import pytest

from clinicflow.engine import allowance
from clinicflow.engine.models import (
    AvailabilitySchedule,
    Clinician,
    DayAvailability,
    PatientCategory,
    PatientRecord,
    TimeRange,
)
from clinicflow.engine.setup import build_engine

# 2024-05-01 is a Wednesday, 2024-05-05 a Sunday, 2024-05-06 a Monday
WEDNESDAY = date(2024, 5, 1)
SUNDAY = date(2024, 5, 5)
MONDAY = date(2024, 5, 6)


def make_patient(
    patient_id: str = "PT-100",
    category: PatientCategory | str = PatientCategory.PAID,
    **fields,
) -> PatientRecord:
    patient = PatientRecord(patient_id=patient_id, name=f"Patient {patient_id}", category=category, **fields)
    if allowance.needs_allowance(patient) and patient.session_allowance is None:
        patient.session_allowance = allowance.initial_allowance()
    return patient


def make_clinician(clinician_id: str = "DR-1", name: str = "Dr. Rao", **weekly) -> Clinician:
    """weekly: monday=[("09:00", "12:00")] etc.; an empty list closes the day."""
    schedule = AvailabilitySchedule(
        weekly={
            day: DayAvailability(
                enabled=bool(ranges),
                ranges=[TimeRange(start=s, end=e) for s, e in ranges],
            )
            for day, ranges in weekly.items()
        }
    )
    return Clinician(clinician_id=clinician_id, name=name, availability=schedule)


@pytest.fixture
def engine():
    """A freshly wired in-memory engine with one clinician."""
    eng = build_engine()
    eng.store.put_clinician(make_clinician())
    eng.store.put_clinician(make_clinician("DR-2", "Dr. Iyer", wednesday=[("13:00", "17:00")]))
    return eng


@pytest.fixture
def add_patient(engine):
    def _add(patient_id: str = "PT-100", category=PatientCategory.PAID, **fields) -> PatientRecord:
        patient = make_patient(patient_id, category, **fields)
        engine.store.put_patient(patient)
        return patient
    return _add


@pytest.fixture
def book(engine):
    """Book and return a single confirmed appointment."""
    from clinicflow.engine.lifecycle import BookingRequest, DateSelection

    def _book(patient_id="PT-100", clinician_id="DR-1", day=WEDNESDAY, time="10:00", **extra):
        request = BookingRequest(
            patient_id=patient_id,
            clinician_id=clinician_id,
            selections=[DateSelection(date=day.isoformat(), times=[time])],
            confirm_conflicts=True,
            **extra,
        )
        return engine.lifecycle.book(request).appointments[0]
    return _book


@pytest.fixture
def test_client():
    """FastAPI TestClient backed by a fresh in-memory engine."""
    from fastapi.testclient import TestClient
    from clinicflow.app import app
    from clinicflow.engine.setup import initialize_engine, shutdown_engine

    initialize_engine()
    yield TestClient(app)
    shutdown_engine()

