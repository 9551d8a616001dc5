"""
Session Allowance Tracker — free-session quota for subsidized-care patients.

Each completed appointment consumes one free session until the quota is
used up; after that it accrues a pending paid session at the flat fee.
Counters only go down through ``reset``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import BaseModel

from clinicflow import settings
from clinicflow.engine.models import PatientCategory, PatientRecord, SessionAllowance

logger = logging.getLogger("engine.allowance")


class UsageResult(BaseModel):
    was_free: bool
    remaining_free_sessions: int
    allowance: SessionAllowance
    # True when the appointment had already been counted (nothing changed)
    already_processed: bool = False


def initial_allowance() -> SessionAllowance:
    return SessionAllowance(free_quota=settings.SUBSIDIZED_FREE_QUOTA)


def record_usage(patient: PatientRecord, appointment_id: str) -> UsageResult:
    """
    Count one completed appointment against the patient's allowance.

    Mutates ``patient.session_allowance`` in place (creating it when
    missing); the caller persists the patient.
    """
    allowance = patient.session_allowance
    if allowance is None:
        allowance = initial_allowance()
        patient.session_allowance = allowance

    if appointment_id in allowance.processed_appointment_ids:
        logger.info(
            "Allowance usage for %s already recorded (appointment %s)",
            patient.patient_id, appointment_id,
        )
        return UsageResult(
            was_free=False,
            remaining_free_sessions=allowance.remaining_free_sessions,
            allowance=allowance.model_copy(deep=True),
            already_processed=True,
        )

    if allowance.free_sessions_used < allowance.free_quota:
        allowance.free_sessions_used += 1
        was_free = True
    else:
        allowance.pending_paid_sessions += 1
        allowance.pending_charge_amount += settings.SUBSIDIZED_FLAT_FEE
        was_free = False

    allowance.processed_appointment_ids.append(appointment_id)
    allowance.last_updated = datetime.now(timezone.utc)

    logger.info(
        "Allowance for %s: free=%d/%d pending_paid=%d (appointment %s, %s)",
        patient.patient_id,
        allowance.free_sessions_used,
        allowance.free_quota,
        allowance.pending_paid_sessions,
        appointment_id,
        "free" if was_free else "paid",
    )
    return UsageResult(
        was_free=was_free,
        remaining_free_sessions=allowance.remaining_free_sessions,
        allowance=allowance.model_copy(deep=True),
    )


def reset(patient: PatientRecord) -> SessionAllowance:
    """Start a fresh allowance (e.g. a new subsidy period)."""
    quota = (
        patient.session_allowance.free_quota
        if patient.session_allowance is not None
        else settings.SUBSIDIZED_FREE_QUOTA
    )
    patient.session_allowance = SessionAllowance(free_quota=quota)
    logger.info("Allowance for %s reset (quota %d)", patient.patient_id, quota)
    return patient.session_allowance


def needs_allowance(patient: PatientRecord) -> bool:
    return patient.category == PatientCategory.SUBSIDIZED
