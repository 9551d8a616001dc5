import logging
from fastapi import APIRouter, HTTPException

from clinicflow.dependencies import get_engine
from clinicflow.engine import allowance
from clinicflow.engine.lifecycle import compute_remaining_sessions
from clinicflow.engine.models import (
    AvailabilitySchedule,
    Clinician,
    DayAvailability,
    PatientRecord,
    PaymentType,
    TimeRange,
)
from clinicflow.engine.store import RecordNotFoundError
from clinicflow.schemas.patients import RegisterClinicianRequest, RegisterPatientRequest

router = APIRouter()
logger = logging.getLogger("clinicflow-server")


def _engine():
    engine = get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Patient directory
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@router.post("/api/patients")
async def register_patient(request: RegisterPatientRequest):
    """Add a patient to the directory (subsidized patients get an allowance)."""
    try:
        engine = _engine()
        if engine.store.find("patients", request.patient_id) is not None:
            raise HTTPException(status_code=409, detail=f"Patient {request.patient_id} already exists")

        try:
            payment_type = PaymentType(request.payment_type.strip().lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid payment type '{request.payment_type}'")

        patient = PatientRecord(
            patient_id=request.patient_id,
            name=request.name,
            category=request.category,
            payment_type=payment_type,
            concession_percent=request.concession_percent,
            total_sessions_required=request.total_sessions_required,
            email=request.email,
        )
        patient.remaining_sessions = compute_remaining_sessions(patient, [])
        if allowance.needs_allowance(patient):
            patient.session_allowance = allowance.initial_allowance()

        engine.store.put_patient(patient)
        logger.info(f"Registered patient {patient.patient_id} ({patient.category.value})")
        return patient.model_dump(mode="json")

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error registering patient: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/patients/{patient_id}")
async def get_patient(patient_id: str):
    try:
        return _engine().store.get_patient(patient_id).model_dump(mode="json")
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting patient {patient_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/patients/{patient_id}/appointments")
async def get_patient_appointments(patient_id: str):
    try:
        appointments = _engine().store.appointments(patient_id=patient_id)
        appointments.sort(key=lambda a: (a.date is None, a.date, a.time or ""))
        return {
            "patient_id": patient_id,
            "count": len(appointments),
            "appointments": [a.model_dump(mode="json") for a in appointments],
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error listing appointments for {patient_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/patients/{patient_id}/allowance/reset")
async def reset_allowance(patient_id: str):
    """Start a new free-session period for a subsidized patient."""
    try:
        engine = _engine()
        patient = engine.store.get_patient(patient_id)
        if not allowance.needs_allowance(patient):
            raise HTTPException(status_code=400, detail=f"Patient {patient_id} has no session allowance")
        fresh = allowance.reset(patient)
        engine.store.put_patient(patient)
        return fresh.model_dump(mode="json")
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error resetting allowance for {patient_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/patients/{patient_id}/events")
async def get_patient_events(patient_id: str):
    """Notifications emitted for a patient, oldest first."""
    try:
        events = _engine().hub.get_events(patient_id)
        return {
            "patient_id": patient_id,
            "count": len(events),
            "events": [e.model_dump(mode="json") for e in events],
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting events for {patient_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Clinician directory
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@router.post("/api/clinicians")
async def register_clinician(request: RegisterClinicianRequest):
    try:
        engine = _engine()
        weekly = {
            day: DayAvailability(
                enabled=entry.enabled,
                ranges=[TimeRange(start=r.start, end=r.end) for r in entry.ranges],
            )
            for day, entry in request.weekly.items()
        }
        clinician = Clinician(
            clinician_id=request.clinician_id,
            name=request.name,
            availability=AvailabilitySchedule(weekly=weekly),
        )
        engine.store.put_clinician(clinician)
        logger.info(f"Registered clinician {clinician.clinician_id}")
        return clinician.model_dump(mode="json")

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error registering clinician: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/clinicians/{clinician_id}")
async def get_clinician(clinician_id: str):
    try:
        return _engine().store.get_clinician(clinician_id).model_dump(mode="json")
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting clinician {clinician_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
