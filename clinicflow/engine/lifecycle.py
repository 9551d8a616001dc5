"""
Appointment Lifecycle — booking, moves, and status transitions.

States: pending → ongoing → completed, or cancelled.  Any state may move
to any other; only a transition *into* completed (from anything else)
fires the financial side effects, in this order:

  1. allowance usage          (subsidized-care patients only)
  2. billing record           (skipped if the appointment is billed)
  3. remaining-session count
  4. patient status           (completed once nothing is left open)

The status write is committed first.  Each side effect is best-effort:
a failure is logged and reported in the outcome but never rolls back the
status change; ``BillingService.sync_completed_appointments`` picks up
any billing that went missing.

Conflicts are advisory.  Booking or moving onto an occupied time raises
ConflictConfirmationRequired; the caller retries with
``confirm_conflicts=True`` to proceed anyway.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, Field

from clinicflow import settings
from clinicflow.engine import allowance
from clinicflow.engine.availability import AvailabilityResolver
from clinicflow.engine.billing import BillingService
from clinicflow.engine.conflicts import ConflictCandidate, check
from clinicflow.engine.events import ClinicEvent, ClinicEventType, NotificationHub
from clinicflow.engine.models import (
    Appointment,
    AppointmentStatus,
    BillingRecord,
    PatientRecord,
    PatientStatus,
)
from clinicflow.engine.store import ClinicStore
from clinicflow.engine.validators import normalize_time, parse_date, time_to_minutes, validate_time

logger = logging.getLogger("engine.lifecycle")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Errors
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BookingValidationError(ValueError):
    """Missing or malformed booking input. Nothing was written."""


class SlotConflict(BaseModel):
    date: dt.date
    time: str
    conflicting_appointments: list[Appointment] = Field(default_factory=list)


class ConflictConfirmationRequired(Exception):
    """
    The requested time overlaps existing appointments (or falls outside
    the clinician's hours).  Nothing was written; retry with
    ``confirm_conflicts=True`` to proceed.
    """

    def __init__(self, conflicts: list[SlotConflict], warnings: list[str] | None = None) -> None:
        self.conflicts = conflicts
        self.warnings = warnings or []
        count = sum(len(c.conflicting_appointments) for c in conflicts)
        parts = [f"{count} conflicting appointment(s)"] if count else []
        parts.extend(self.warnings)
        super().__init__("Confirmation required: " + "; ".join(parts))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Requests / results
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class DateSelection(BaseModel):
    date: str
    times: list[str] = Field(default_factory=list)


class BookingRequest(BaseModel):
    patient_id: str = ""
    clinician_id: str = ""
    selections: list[DateSelection] = Field(default_factory=list)
    duration_minutes: int = settings.DEFAULT_DURATION_MINUTES
    notes: Optional[str] = None
    amount: Optional[float] = None
    confirm_conflicts: bool = False


class BookingResult(BaseModel):
    appointments: list[Appointment] = Field(default_factory=list)
    # (date, time) pairs the patient already had booked
    skipped: list[str] = Field(default_factory=list)
    conflicts: list[SlotConflict] = Field(default_factory=list)


class MoveResult(BaseModel):
    appointment: Appointment
    conflicts: list[SlotConflict] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class TransitionOutcome(BaseModel):
    appointment: Appointment
    old_status: AppointmentStatus
    new_status: AppointmentStatus
    side_effects_fired: list[str] = Field(default_factory=list)
    failed_side_effects: list[str] = Field(default_factory=list)
    usage: Optional[allowance.UsageResult] = None
    billing_record: Optional[BillingRecord] = None


def compute_remaining_sessions(
    patient: PatientRecord, appointments: Iterable[Appointment]
) -> Optional[int]:
    """
    total_sessions_required − 1 − completed non-package sessions (min 0).

    The first session is the consultation.  Patients without a
    required-session count keep whatever they had.
    """
    if patient.total_sessions_required is None:
        return patient.remaining_sessions
    completed = sum(
        1
        for a in appointments
        if a.patient_id == patient.patient_id
        and a.status == AppointmentStatus.COMPLETED
        and a.package is None
    )
    return max(0, patient.total_sessions_required - 1 - completed)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Lifecycle
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class AppointmentLifecycle:
    def __init__(
        self,
        store: ClinicStore,
        billing: BillingService,
        resolver: AvailabilityResolver,
        hub: NotificationHub | None = None,
    ) -> None:
        self._store = store
        self._billing = billing
        self._resolver = resolver
        self._hub = hub

    def get(self, appointment_id: str) -> Appointment:
        return self._store.get_appointment(appointment_id)

    def check_conflicts(self, candidate: ConflictCandidate):
        existing = self._store.appointments(
            clinician_id=candidate.clinician_id, day=candidate.date
        )
        return check(existing, candidate)

    # ── Booking ──

    def book(self, request: BookingRequest) -> BookingResult:
        patient, clinician_name, slots = self._validate_booking(request)

        conflicts = []
        for day, time in slots:
            result = self.check_conflicts(
                ConflictCandidate(
                    clinician_id=request.clinician_id,
                    date=day,
                    time=time,
                    duration_minutes=request.duration_minutes,
                )
            )
            if result.has_conflict:
                conflicts.append(
                    SlotConflict(
                        date=day, time=time,
                        conflicting_appointments=result.conflicting_appointments,
                    )
                )
        if conflicts and not request.confirm_conflicts:
            logger.info(
                "Booking for %s with %s needs confirmation: %d conflicting slot(s)",
                request.patient_id, request.clinician_id, len(conflicts),
            )
            raise ConflictConfirmationRequired(conflicts)

        existing = self._store.appointments(patient_id=patient.patient_id)
        taken = {
            (a.date, a.time)
            for a in existing
            if a.status != AppointmentStatus.CANCELLED and a.is_scheduled
        }
        first_booking = not any(a.package is None for a in existing)

        created: list[Appointment] = []
        skipped: list[str] = []
        for day, time in slots:
            if (day, time) in taken:
                skipped.append(f"{day.isoformat()} {time}")
                continue
            taken.add((day, time))
            created.append(
                Appointment(
                    patient_id=patient.patient_id,
                    patient_name=patient.name,
                    clinician_id=request.clinician_id,
                    clinician_name=clinician_name,
                    date=day,
                    time=time,
                    duration_minutes=request.duration_minutes,
                    notes=request.notes,
                    amount=request.amount,
                )
            )

        if created and first_booking:
            created[0].is_consultation = True

        patient.assigned_clinician = request.clinician_id
        if patient.status == PatientStatus.PENDING and created:
            patient.status = PatientStatus.ONGOING
        patient.remaining_sessions = compute_remaining_sessions(patient, existing + created)

        batch = self._store.batch()
        for appointment in created:
            batch.put("appointments", appointment)
        batch.put("patients", patient)
        batch.commit()

        logger.info(
            "Booked %d appointment(s) for %s with %s (%d skipped, %d confirmed conflict(s))",
            len(created), patient.patient_id, request.clinician_id, len(skipped), len(conflicts),
        )
        if created:
            self._publish(
                ClinicEvent(
                    event_type=ClinicEventType.APPOINTMENT_BOOKED,
                    patient_id=patient.patient_id,
                    appointment_id=created[0].appointment_id,
                    payload={
                        "appointment_ids": [a.appointment_id for a in created],
                        "clinician_id": request.clinician_id,
                        "slots": [f"{a.date.isoformat()} {a.time}" for a in created],
                    },
                )
            )
        return BookingResult(appointments=created, skipped=skipped, conflicts=conflicts)

    def _validate_booking(
        self, request: BookingRequest
    ) -> tuple[PatientRecord, str, list[tuple[dt.date, str]]]:
        errors = []
        if not request.patient_id:
            errors.append("patient is required")
        if not request.clinician_id:
            errors.append("clinician is required")
        if request.duration_minutes <= 0:
            errors.append("duration must be positive")

        slots: list[tuple[dt.date, str]] = []
        for selection in request.selections:
            day = parse_date(selection.date)
            if day is None:
                errors.append(f"invalid date '{selection.date}'")
                continue
            for time in selection.times:
                if not validate_time(time):
                    errors.append(f"invalid time '{time}' on {selection.date}")
                    continue
                slots.append((day, normalize_time(time)))
        if not slots and not errors:
            errors.append("select at least one date and time")

        if errors:
            raise BookingValidationError("; ".join(errors))

        patient = self._store.find("patients", request.patient_id)
        if patient is None:
            raise BookingValidationError(f"unknown patient '{request.patient_id}'")
        clinician = self._store.find("clinicians", request.clinician_id)
        if clinician is None:
            raise BookingValidationError(f"unknown clinician '{request.clinician_id}'")

        unique = sorted(set(slots))
        return patient, clinician.name, unique

    # ── Moves ──

    def reschedule(
        self,
        appointment_id: str,
        new_date: dt.date | str,
        new_time: str,
        duration_minutes: int | None = None,
        confirm_conflicts: bool = False,
    ) -> MoveResult:
        """Move an appointment (or schedule an unscheduled package session)."""
        appointment = self._store.get_appointment(appointment_id)
        day = parse_date(new_date)
        if day is None:
            raise BookingValidationError(f"invalid date '{new_date}'")
        if not validate_time(new_time):
            raise BookingValidationError(f"invalid time '{new_time}'")
        if duration_minutes is not None and duration_minutes <= 0:
            raise BookingValidationError("duration must be positive")
        if appointment.status.is_terminal:
            raise BookingValidationError(
                f"cannot reschedule a {appointment.status.value} appointment"
            )
        if not appointment.clinician_id:
            raise BookingValidationError("appointment has no clinician; transfer it first")

        duration = duration_minutes or appointment.duration_minutes
        result = self.check_conflicts(
            ConflictCandidate(
                clinician_id=appointment.clinician_id,
                date=day,
                time=new_time,
                duration_minutes=duration,
                appointment_id=appointment_id,
            )
        )
        conflicts = []
        if result.has_conflict:
            conflicts.append(
                SlotConflict(
                    date=day, time=new_time,
                    conflicting_appointments=result.conflicting_appointments,
                )
            )
            if not confirm_conflicts:
                raise ConflictConfirmationRequired(conflicts)

        old_slot = (
            f"{appointment.date.isoformat()} {appointment.time}"
            if appointment.is_scheduled else None
        )
        appointment.date = day
        appointment.time = normalize_time(new_time)
        appointment.duration_minutes = duration
        self._store.put_appointment(appointment)

        logger.info("Rescheduled %s: %s → %s %s", appointment_id, old_slot, day, appointment.time)
        self._publish(
            ClinicEvent(
                event_type=ClinicEventType.APPOINTMENT_RESCHEDULED,
                patient_id=appointment.patient_id,
                appointment_id=appointment_id,
                payload={
                    "from": old_slot,
                    "to": f"{day.isoformat()} {appointment.time}",
                    "clinician_id": appointment.clinician_id,
                },
            )
        )
        return MoveResult(appointment=appointment, conflicts=conflicts)

    def transfer(
        self,
        appointment_id: str,
        clinician_id: str,
        confirm_conflicts: bool = False,
    ) -> MoveResult:
        """Hand an appointment to another clinician at the same date and time."""
        appointment = self._store.get_appointment(appointment_id)
        if not clinician_id:
            raise BookingValidationError("clinician is required")
        if clinician_id == appointment.clinician_id:
            raise BookingValidationError("appointment is already with this clinician")
        if appointment.status.is_terminal:
            raise BookingValidationError(
                f"cannot transfer a {appointment.status.value} appointment"
            )
        target = self._store.find("clinicians", clinician_id)
        if target is None:
            raise BookingValidationError(f"unknown clinician '{clinician_id}'")

        conflicts: list[SlotConflict] = []
        warnings: list[str] = []
        if appointment.is_scheduled:
            result = self.check_conflicts(
                ConflictCandidate(
                    clinician_id=clinician_id,
                    date=appointment.date,
                    time=appointment.time,
                    duration_minutes=appointment.duration_minutes,
                    appointment_id=appointment_id,
                )
            )
            if result.has_conflict:
                conflicts.append(
                    SlotConflict(
                        date=appointment.date, time=appointment.time,
                        conflicting_appointments=result.conflicting_appointments,
                    )
                )
            if not self._within_hours(clinician_id, appointment):
                warnings.append(
                    f"{target.name or clinician_id} is not available on "
                    f"{appointment.date.isoformat()} at {appointment.time}"
                )
        if (conflicts or warnings) and not confirm_conflicts:
            raise ConflictConfirmationRequired(conflicts, warnings)

        previous = appointment.clinician_id
        appointment.clinician_id = clinician_id
        appointment.clinician_name = target.name
        self._store.put_appointment(appointment)

        patient = self._store.find("patients", appointment.patient_id)
        if patient is not None and patient.assigned_clinician == previous:
            patient.assigned_clinician = clinician_id
            self._store.put_patient(patient)

        logger.info("Transferred %s from %s to %s", appointment_id, previous, clinician_id)
        self._publish(
            ClinicEvent(
                event_type=ClinicEventType.APPOINTMENT_TRANSFERRED,
                patient_id=appointment.patient_id,
                appointment_id=appointment_id,
                payload={"from_clinician": previous, "to_clinician": clinician_id},
            )
        )
        return MoveResult(appointment=appointment, conflicts=conflicts, warnings=warnings)

    def _within_hours(self, clinician_id: str, appointment: Appointment) -> bool:
        availability = self._resolver.resolve(clinician_id, appointment.date)
        if not availability.enabled:
            return False
        start = time_to_minutes(appointment.time)
        end = start + appointment.duration_minutes
        for time_range in availability.ranges:
            range_start = time_to_minutes(time_range.start)
            range_end = time_to_minutes(time_range.end)
            if range_end < range_start:
                range_end += 24 * 60
            if range_start <= start and end <= range_end:
                return True
        return False

    # ── Status ──

    def change_status(
        self,
        appointment_id: str,
        new_status: AppointmentStatus | str,
        is_extra_treatment: bool = False,
    ) -> TransitionOutcome:
        appointment = self._store.get_appointment(appointment_id)
        new_status = AppointmentStatus(new_status)
        old_status = appointment.status

        appointment.status = new_status
        if is_extra_treatment:
            appointment.is_extra_treatment = True
        self._store.put_appointment(appointment)

        outcome = TransitionOutcome(
            appointment=appointment, old_status=old_status, new_status=new_status
        )
        logger.info(
            "Appointment %s: %s → %s", appointment_id, old_status.value, new_status.value
        )
        if old_status != new_status:
            self._publish(
                ClinicEvent.status_changed(
                    appointment.patient_id, appointment_id, old_status.value, new_status.value
                )
            )

        if new_status == AppointmentStatus.COMPLETED and old_status != AppointmentStatus.COMPLETED:
            self._run_completion_effects(appointment, outcome)
        return outcome

    def _run_completion_effects(self, appointment: Appointment, outcome: TransitionOutcome) -> None:
        steps: list[tuple[str, Callable[[Appointment, TransitionOutcome], bool]]] = [
            ("allowance", self._record_allowance),
            ("billing", self._create_billing),
            ("remaining_sessions", self._update_remaining_sessions),
            ("patient_status", self._update_patient_status),
        ]
        for name, step in steps:
            try:
                fired = step(appointment, outcome)
            except Exception:
                logger.exception(
                    "Completion side effect '%s' failed for appointment %s",
                    name, appointment.appointment_id,
                )
                outcome.failed_side_effects.append(name)
                continue
            if fired:
                outcome.side_effects_fired.append(name)

    def _record_allowance(self, appointment: Appointment, outcome: TransitionOutcome) -> bool:
        patient = self._store.get_patient(appointment.patient_id)
        if not allowance.needs_allowance(patient):
            return False

        usage = allowance.record_usage(patient, appointment.appointment_id)
        outcome.usage = usage
        if usage.already_processed:
            return False

        self._store.put_patient(patient)
        self._publish(
            ClinicEvent.session_balance_changed(
                patient.patient_id,
                appointment.appointment_id,
                usage.allowance.model_dump(mode="json"),
                usage.was_free,
            )
        )
        return True

    def _create_billing(self, appointment: Appointment, outcome: TransitionOutcome) -> bool:
        patient = self._store.get_patient(appointment.patient_id)
        record = self._billing.bill_appointment(appointment, patient)
        outcome.billing_record = record
        return record is not None

    def _update_remaining_sessions(self, appointment: Appointment, outcome: TransitionOutcome) -> bool:
        patient = self._store.get_patient(appointment.patient_id)
        if patient.total_sessions_required is None:
            return False
        patient.remaining_sessions = compute_remaining_sessions(
            patient, self._store.appointments(patient_id=patient.patient_id)
        )
        self._store.put_patient(patient)
        return True

    def _update_patient_status(self, appointment: Appointment, outcome: TransitionOutcome) -> bool:
        patient = self._store.get_patient(appointment.patient_id)
        appointments = self._store.appointments(patient_id=patient.patient_id)
        if not all(a.status.is_terminal for a in appointments):
            return False
        if patient.status == PatientStatus.COMPLETED:
            return False
        patient.status = PatientStatus.COMPLETED
        self._store.put_patient(patient)
        logger.info("Patient %s has no open appointments — marked completed", patient.patient_id)
        return True

    # ── Deletion ──

    def delete(self, appointment_id: str) -> None:
        appointment = self._store.get_appointment(appointment_id)
        self._store.delete("appointments", appointment_id)
        logger.info("Appointment %s deleted", appointment_id)
        self._publish(
            ClinicEvent(
                event_type=ClinicEventType.APPOINTMENT_DELETED,
                patient_id=appointment.patient_id,
                appointment_id=appointment_id,
            )
        )

    def _publish(self, event: ClinicEvent) -> None:
        if self._hub is not None:
            self._hub.publish(event)

