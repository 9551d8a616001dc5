"""
Billing — category rule table, appointment-to-billing sync, bulk import,
payments and corrections.

Every completed appointment gets exactly one BillingRecord, priced by
the patient's category:

    REFERRAL    0                        Completed   (shown as N/A)
    VIP         0 (standard kept)        Auto-Paid
    PAID        standard, less concession when paying "with" concession
    SUBSIDIZED  flat fee                 Completed   Auto-Paid
    AFFILIATE / STAFF / OTHER  standard  Pending

``sync_completed_appointments`` is the reconciliation pass: it can be run
any number of times and only ever fills in what is missing.
"""

from __future__ import annotations

import io
import logging
import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Optional

import pandas as pd
from pydantic import BaseModel, Field

from clinicflow import settings
from clinicflow.engine.events import ClinicEvent, ClinicEventType, NotificationHub
from clinicflow.engine.models import (
    Appointment,
    AppointmentStatus,
    BillingRecord,
    BillingStatus,
    PatientCategory,
    PatientRecord,
    PaymentType,
)
from clinicflow.engine.store import ClinicStore
from clinicflow.engine.validators import parse_date

logger = logging.getLogger("engine.billing")


class PaymentError(Exception):
    """Payment attempted on a record that is not pending."""


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Rule table
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass(frozen=True)
class BillingDecision:
    amount: float
    standard_amount: float
    status: BillingStatus
    payment_mode: Optional[str] = None


def _referral(patient: PatientRecord, standard: float) -> BillingDecision:
    return BillingDecision(0.0, standard, BillingStatus.COMPLETED, "N/A")


def _vip(patient: PatientRecord, standard: float) -> BillingDecision:
    return BillingDecision(0.0, standard, BillingStatus.AUTO_PAID, "Auto-Paid")


def _paid(patient: PatientRecord, standard: float) -> BillingDecision:
    if patient.payment_type == PaymentType.WITH_CONCESSION:
        percent = patient.concession_percent
        if percent is None:
            percent = settings.DEFAULT_CONCESSION_PERCENT
        amount = round(standard * (1 - percent / 100), 2)
        return BillingDecision(amount, standard, BillingStatus.PENDING)
    return BillingDecision(standard, standard, BillingStatus.PENDING)


def _subsidized(patient: PatientRecord, standard: float) -> BillingDecision:
    return BillingDecision(
        settings.SUBSIDIZED_FLAT_FEE, standard, BillingStatus.COMPLETED, "Auto-Paid"
    )


def _standard(patient: PatientRecord, standard: float) -> BillingDecision:
    return BillingDecision(standard, standard, BillingStatus.PENDING)


BILLING_RULES: dict[PatientCategory, Callable[[PatientRecord, float], BillingDecision]] = {
    PatientCategory.REFERRAL: _referral,
    PatientCategory.VIP: _vip,
    PatientCategory.PAID: _paid,
    PatientCategory.SUBSIDIZED: _subsidized,
    PatientCategory.AFFILIATE: _standard,
    PatientCategory.STAFF: _standard,
    PatientCategory.OTHER: _standard,
}

_missing_rules = set(PatientCategory) - set(BILLING_RULES)
if _missing_rules:
    raise RuntimeError(f"No billing rule for: {sorted(c.value for c in _missing_rules)}")


def evaluate(patient: PatientRecord, appointment: Appointment | None = None) -> BillingDecision:
    standard = settings.STANDARD_SESSION_RATE
    if appointment is not None and appointment.amount is not None:
        standard = appointment.amount
    return BILLING_RULES[patient.category](patient, standard)


def build_record(patient: PatientRecord, appointment: Appointment) -> BillingRecord:
    decision = evaluate(patient, appointment)
    return BillingRecord(
        appointment_id=appointment.appointment_id,
        patient_id=patient.patient_id,
        patient_name=appointment.patient_name or patient.name,
        clinician_name=appointment.clinician_name,
        amount=decision.amount,
        standard_amount=decision.standard_amount,
        status=decision.status,
        payment_mode=decision.payment_mode,
        date=appointment.date or date.today(),
        category=patient.category,
        is_extra_treatment=appointment.is_extra_treatment,
        package_id=appointment.package.package_id if appointment.package else None,
    )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Reports
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SyncReport(BaseModel):
    created: list[str] = Field(default_factory=list)
    already_billed: int = 0
    missing_patients: list[str] = Field(default_factory=list)
    corrected: list[str] = Field(default_factory=list)


class RejectedRow(BaseModel):
    row_number: int
    reason: str
    row: dict[str, Any] = Field(default_factory=dict)


class ImportReport(BaseModel):
    imported: list[BillingRecord] = Field(default_factory=list)
    rejected: list[RejectedRow] = Field(default_factory=list)


# Spreadsheet header spellings, checked in order
PATIENT_COLUMNS = [
    "name of athlete", "name of athelete", "athlete name", "athlete",
    "patient", "patient name", "name", "patientname",
]
PATIENT_ID_COLUMNS = ["patient id", "patientid", "patient_id"]
DOCTOR_COLUMNS = ["doctor", "doctor name", "doctorname"]
AMOUNT_COLUMNS = ["amount", "total", "price"]
DATE_COLUMNS = ["date", "registration date", "reg date", "registered date"]


def _first(row: dict[str, Any], columns: list[str]) -> str:
    for column in columns:
        value = row.get(column)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def _parse_amount(raw: str) -> float:
    # "Rs. 1,500" -> 1500.0
    match = re.search(r"-?\d+(?:\.\d+)?", (raw or "").replace(",", ""))
    return float(match.group()) if match else 0.0


def read_import_csv(csv_content: str) -> list[dict[str, str]]:
    """
    Parse an exported billing sheet into import rows.

    Headers are lower-cased and stripped; fully blank rows are dropped.
    """
    if not csv_content or not csv_content.strip():
        return []
    try:
        # dtype=str keeps ids and amounts exactly as typed
        df = pd.read_csv(io.StringIO(csv_content), dtype=str)
    except pd.errors.EmptyDataError:
        return []

    df = df.fillna("")
    df.columns = [str(c).strip().lower() for c in df.columns]
    df = df.apply(lambda col: col.str.strip())
    df = df[(df != "").any(axis=1)]
    return df.to_dict(orient="records")


def export_csv(records: Iterable[BillingRecord]) -> str:
    """Billing records as CSV (one row per record)."""
    columns = [
        "billing_id", "date", "patient_id", "patient_name", "clinician_name",
        "amount", "status", "payment_mode", "appointment_id", "package_id",
    ]
    rows = [r.model_dump(mode="json", include=set(columns)) for r in records]
    df = pd.DataFrame(rows, columns=columns)
    buffer = io.StringIO()
    df.to_csv(buffer, index=False)
    return buffer.getvalue()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Service
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BillingService:
    def __init__(self, store: ClinicStore, hub: NotificationHub | None = None) -> None:
        self._store = store
        self._hub = hub

    def records(self, patient_id: str | None = None) -> list[BillingRecord]:
        if patient_id is None:
            return self._store.list("billing")
        return self._store.list("billing", lambda b: b.patient_id == patient_id)

    def get(self, billing_id: str) -> BillingRecord:
        return self._store.get("billing", billing_id)

    def bill_appointment(
        self, appointment: Appointment, patient: PatientRecord
    ) -> BillingRecord | None:
        """Create the appointment's billing record. None if one already exists."""
        if self._store.billing_for_appointment(appointment.appointment_id):
            logger.info(
                "Billing for appointment %s already exists — skipped",
                appointment.appointment_id,
            )
            return None

        record = build_record(patient, appointment)
        self._store.put_billing(record)
        logger.info(
            "Billed appointment %s: %s %.2f (%s, %s)",
            appointment.appointment_id,
            record.billing_id,
            record.amount,
            patient.category.value,
            record.status.value,
        )
        self._publish(
            ClinicEvent(
                event_type=ClinicEventType.BILLING_CREATED,
                patient_id=patient.patient_id,
                appointment_id=appointment.appointment_id,
                payload={
                    "billing_id": record.billing_id,
                    "amount": record.amount,
                    "status": record.status.value,
                },
            )
        )
        return record

    def sync_completed_appointments(self) -> SyncReport:
        """Bill every completed appointment that has no record yet."""
        report = SyncReport()
        billed = self._store.billed_appointment_ids()

        completed = self._store.list(
            "appointments", lambda a: a.status == AppointmentStatus.COMPLETED
        )
        for appointment in sorted(completed, key=lambda a: a.created_at):
            if appointment.appointment_id in billed:
                report.already_billed += 1
                continue

            patient = self._store.find("patients", appointment.patient_id)
            if patient is None:
                logger.warning(
                    "Patient %s not found for appointment %s — not billed",
                    appointment.patient_id, appointment.appointment_id,
                )
                report.missing_patients.append(appointment.appointment_id)
                continue

            record = self.bill_appointment(appointment, patient)
            if record is not None:
                report.created.append(record.billing_id)
                billed.add(appointment.appointment_id)

        report.corrected = self.correct_subsidized_records()
        logger.info(
            "Billing sync: %d created, %d already billed, %d missing patient, %d corrected",
            len(report.created),
            report.already_billed,
            len(report.missing_patients),
            len(report.corrected),
        )
        return report

    def correct_subsidized_records(self) -> list[str]:
        """Settle subsidized appointment records still left Pending at the flat fee."""
        subsidized = {
            p.patient_id
            for p in self._store.list(
                "patients", lambda p: p.category == PatientCategory.SUBSIDIZED
            )
        }
        stale = self._store.list(
            "billing",
            lambda b: b.appointment_id is not None
            and b.status == BillingStatus.PENDING
            and (b.category == PatientCategory.SUBSIDIZED or b.patient_id in subsidized),
        )
        if not stale:
            return []

        batch = self._store.batch()
        for record in stale:
            record.amount = settings.SUBSIDIZED_FLAT_FEE
            record.status = BillingStatus.COMPLETED
            record.payment_mode = "Auto-Paid"
            record.category = PatientCategory.SUBSIDIZED
            record.corrected_at = _now()
            batch.put("billing", record)
        batch.commit()
        return [r.billing_id for r in stale]

    def apply_vip_corrections(self) -> list[str]:
        """Zero the amount of VIP records that were billed at the standard rate."""
        vip = {
            p.patient_id
            for p in self._store.list("patients", lambda p: p.category == PatientCategory.VIP)
        }
        affected = self._store.list(
            "billing",
            lambda b: (b.category == PatientCategory.VIP or b.patient_id in vip)
            and b.package_id is None
            and b.amount != 0,
        )
        if not affected:
            return []

        batch = self._store.batch()
        for record in affected:
            if record.standard_amount is None:
                record.standard_amount = record.amount
            record.amount = 0.0
            record.status = BillingStatus.AUTO_PAID
            record.payment_mode = "Auto-Paid"
            record.category = PatientCategory.VIP
            record.corrected_at = _now()
            batch.put("billing", record)
        batch.commit()
        logger.info("VIP correction applied to %d record(s)", len(affected))
        return [r.billing_id for r in affected]

    def import_rows(self, rows: Iterable[dict[str, Any]]) -> ImportReport:
        """
        Import billing rows from a spreadsheet export.

        Column names are matched loosely (see the *_COLUMNS lists).  Imported
        records are Completed with payment mode "N/A".  Rows without a
        usable date are rejected and reported.
        """
        report = ImportReport()
        timestamp = int(time.time() * 1000)

        for index, raw in enumerate(rows):
            row = {str(k).strip().lower(): v for k, v in raw.items()}
            # header is row 1 in the sheet
            row_number = index + 2

            record_date = parse_date(_first(row, DATE_COLUMNS))
            if record_date is None:
                report.rejected.append(
                    RejectedRow(row_number=row_number, reason="Missing or invalid date", row=raw)
                )
                continue

            report.imported.append(
                BillingRecord(
                    billing_id=f"BILL-IMPORT-{timestamp}-{index + 1}",
                    patient_id=_first(row, PATIENT_ID_COLUMNS) or f"IMP-{timestamp}-{index + 1}",
                    patient_name=_first(row, PATIENT_COLUMNS) or f"Imported Patient {index + 1}",
                    clinician_name=_first(row, DOCTOR_COLUMNS),
                    amount=_parse_amount(_first(row, AMOUNT_COLUMNS)),
                    status=BillingStatus.COMPLETED,
                    payment_mode="N/A",
                    date=record_date,
                )
            )

        if report.imported:
            batch = self._store.batch()
            for record in report.imported:
                batch.put("billing", record)
            batch.commit()

        logger.info(
            "Billing import: %d imported, %d rejected",
            len(report.imported), len(report.rejected),
        )
        return report

    def record_payment(
        self,
        billing_id: str,
        payment_mode: str,
        amount: float | None = None,
        reference: str | None = None,
    ) -> BillingRecord:
        record = self._store.get("billing", billing_id)
        if record.status != BillingStatus.PENDING:
            raise PaymentError(
                f"Billing record {billing_id} is {record.status.value}, not Pending"
            )
        if amount is not None:
            if amount < 0:
                raise PaymentError("Payment amount cannot be negative")
            record.amount = amount
        record.status = BillingStatus.COMPLETED
        record.payment_mode = payment_mode
        record.payment_reference = reference
        record.paid_at = _now()
        self._store.put_billing(record)
        logger.info(
            "Payment recorded for %s: %.2f via %s", billing_id, record.amount, payment_mode
        )
        return record

    def delete(self, billing_id: str) -> None:
        self._store.delete("billing", billing_id)
        logger.info("Billing record %s deleted", billing_id)

    def _publish(self, event: ClinicEvent) -> None:
        if self._hub is not None:
            self._hub.publish(event)


def _now() -> datetime:
    return datetime.now(timezone.utc)
