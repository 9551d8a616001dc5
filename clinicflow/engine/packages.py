"""
Package Ledger — prepaid multi-session packages.

A purchase writes one Package, one Pending BillingRecord and N
unscheduled session appointments in a single store batch.  Removal is
the reverse cascade, also one batch: either everything goes or nothing
does, and the patient's pre-package fields are restored.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from clinicflow.engine.events import ClinicEvent, ClinicEventType, NotificationHub
from clinicflow.engine.lifecycle import compute_remaining_sessions
from clinicflow.engine.models import (
    Appointment,
    BillingRecord,
    BillingStatus,
    Package,
    PackageLink,
)
from clinicflow.engine.store import BatchCommitError, ClinicStore

logger = logging.getLogger("engine.packages")


class PackageValidationError(ValueError):
    """Invalid purchase parameters."""


class PackageRemovalError(Exception):
    """The removal cascade failed and was rolled back."""

    def __init__(self, patient_id: str, failed: list[str]) -> None:
        self.patient_id = patient_id
        self.failed = failed
        super().__init__(
            f"Package removal for {patient_id} failed ({len(failed)} operation(s)): "
            + "; ".join(failed)
        )


class PurchaseResult(BaseModel):
    package: Package
    billing_record: BillingRecord
    appointments: list[Appointment] = Field(default_factory=list)


class RemovalResult(BaseModel):
    patient_id: str
    packages: list[str] = Field(default_factory=list)
    appointments: list[str] = Field(default_factory=list)
    billing_records: list[str] = Field(default_factory=list)


def discounted_amount(amount: float, discount_percent: Optional[float]) -> float:
    if not discount_percent:
        return round(amount, 2)
    return round(amount * (1 - discount_percent / 100), 2)


class PackageLedger:
    def __init__(self, store: ClinicStore, hub: NotificationHub | None = None) -> None:
        self._store = store
        self._hub = hub

    def purchase(
        self,
        patient_id: str,
        total_sessions: int,
        amount: float,
        discount_percent: float | None = None,
        name: str = "",
        description: str | None = None,
        clinician_id: str = "",
        clinician_name: str = "",
    ) -> PurchaseResult:
        if total_sessions is None or int(total_sessions) != total_sessions or total_sessions <= 0:
            raise PackageValidationError("total_sessions must be a positive whole number")
        if amount is None or amount <= 0:
            raise PackageValidationError("amount must be greater than zero")
        if discount_percent is not None and not 0 <= discount_percent <= 100:
            raise PackageValidationError("discount_percent must be between 0 and 100")

        total_sessions = int(total_sessions)
        patient = self._store.get_patient(patient_id)

        package = Package(
            patient_id=patient_id,
            name=name or f"{total_sessions}-session package",
            description=description,
            total_sessions=total_sessions,
            amount=amount,
            discount_percent=discount_percent,
        )
        record = BillingRecord(
            patient_id=patient_id,
            patient_name=patient.name,
            clinician_name=clinician_name,
            amount=discounted_amount(amount, discount_percent),
            standard_amount=amount,
            status=BillingStatus.PENDING,
            date=date.today(),
            category=patient.category,
            package_id=package.package_id,
            package_sessions=total_sessions,
        )
        package.billing_id = record.billing_id

        sessions = [
            Appointment(
                patient_id=patient_id,
                patient_name=patient.name,
                clinician_id=clinician_id,
                clinician_name=clinician_name,
                package=PackageLink(
                    package_id=package.package_id,
                    session_number=number,
                    total_sessions=total_sessions,
                ),
            )
            for number in range(1, total_sessions + 1)
        ]

        if patient.package_baseline is None:
            patient.package_baseline = patient.baseline()
        patient.total_sessions_required = (patient.total_sessions_required or 0) + total_sessions
        patient.remaining_sessions = compute_remaining_sessions(
            patient, self._store.appointments(patient_id=patient_id)
        )
        patient.package_name = package.name
        patient.package_amount = amount
        patient.package_description = description

        batch = self._store.batch()
        batch.put("packages", package)
        batch.put("billing", record)
        for session in sessions:
            batch.put("appointments", session)
        batch.put("patients", patient)
        batch.commit()

        logger.info(
            "Package %s purchased for %s: %d session(s), billed %.2f",
            package.package_id, patient_id, total_sessions, record.amount,
        )
        self._publish(
            ClinicEvent(
                event_type=ClinicEventType.PACKAGE_PURCHASED,
                patient_id=patient_id,
                payload={
                    "package_id": package.package_id,
                    "total_sessions": total_sessions,
                    "billing_id": record.billing_id,
                    "amount": record.amount,
                },
            )
        )
        return PurchaseResult(package=package, billing_record=record, appointments=sessions)

    def remove(self, patient_id: str) -> RemovalResult:
        """
        Delete every package of the patient with its sessions and billing.

        Raises PackageRemovalError (after rolling back) when any part of
        the cascade fails.
        """
        patient = self._store.get_patient(patient_id)
        packages = self._store.packages_for(patient_id)
        package_ids = {p.package_id for p in packages}

        appointments = self._store.list(
            "appointments",
            lambda a: a.patient_id == patient_id and a.package is not None,
        )
        package_ids |= {a.package.package_id for a in appointments}
        billing = self._store.list(
            "billing", lambda b: b.package_id is not None and b.package_id in package_ids
        )

        baseline = patient.package_baseline
        if baseline is not None:
            patient.total_sessions_required = baseline.total_sessions_required
            patient.remaining_sessions = baseline.remaining_sessions
            patient.payment_type = baseline.payment_type
            patient.concession_percent = baseline.concession_percent
            patient.package_name = baseline.package_name
            patient.package_amount = baseline.package_amount
            patient.package_description = baseline.package_description
            patient.package_baseline = None
        else:
            patient.package_name = None
            patient.package_amount = None
            patient.package_description = None
        # sessions completed since the purchase still count
        patient.remaining_sessions = compute_remaining_sessions(
            patient,
            self._store.list(
                "appointments",
                lambda a: a.patient_id == patient_id and a.package is None,
            ),
        )

        batch = self._store.batch()
        for appointment in appointments:
            batch.delete("appointments", appointment.appointment_id)
        for record in billing:
            batch.delete("billing", record.billing_id)
        for package in packages:
            batch.delete("packages", package.package_id)
        batch.put("patients", patient)

        try:
            batch.commit()
        except BatchCommitError as exc:
            logger.error("Package removal for %s rolled back: %s", patient_id, exc.failed)
            raise PackageRemovalError(patient_id, exc.failed) from exc

        result = RemovalResult(
            patient_id=patient_id,
            packages=[p.package_id for p in packages],
            appointments=[a.appointment_id for a in appointments],
            billing_records=[b.billing_id for b in billing],
        )
        logger.info(
            "Removed %d package(s) for %s: %d session(s), %d billing record(s)",
            len(result.packages), patient_id,
            len(result.appointments), len(result.billing_records),
        )
        self._publish(
            ClinicEvent(
                event_type=ClinicEventType.PACKAGE_REMOVED,
                patient_id=patient_id,
                payload=result.model_dump(),
            )
        )
        return result

    def package_appointments(self, patient_id: str) -> list[Appointment]:
        sessions = self._store.list(
            "appointments",
            lambda a: a.patient_id == patient_id and a.package is not None,
        )
        return sorted(sessions, key=lambda a: (a.package.package_id, a.package.session_number))

    def _publish(self, event: ClinicEvent) -> None:
        if self._hub is not None:
            self._hub.publish(event)
