import logging
from typing import Optional

from fastapi import APIRouter, HTTPException

from clinicflow import settings
from clinicflow.dependencies import get_engine
from clinicflow.engine.availability import AvailabilityValidationError
from clinicflow.engine.conflicts import ConflictCandidate
from clinicflow.engine.lifecycle import (
    BookingRequest,
    BookingValidationError,
    ConflictConfirmationRequired,
)
from clinicflow.engine.store import RecordNotFoundError
from clinicflow.engine.validators import parse_date
from clinicflow.schemas.scheduling import (
    ConflictCheckRequest,
    CopyOverrideRequest,
    DayScheduleRequest,
    RescheduleRequest,
    StatusChangeRequest,
    TransferRequest,
)

router = APIRouter()
logger = logging.getLogger("clinicflow-server")


def _engine():
    engine = get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


def _date_or_400(value: str):
    parsed = parse_date(value)
    if parsed is None:
        raise HTTPException(status_code=400, detail=f"Invalid date '{value}'")
    return parsed


def _confirmation_detail(e: ConflictConfirmationRequired) -> dict:
    return {
        "message": str(e),
        "conflicts": [c.model_dump(mode="json") for c in e.conflicts],
        "warnings": e.warnings,
        "retry_with": {"confirm_conflicts": True},
    }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Availability
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@router.get("/api/availability/{clinician_id}/{date}")
async def get_availability(clinician_id: str, date: str):
    """Resolved working hours of a clinician on a date."""
    try:
        day = _date_or_400(date)
        availability = _engine().availability.resolve(clinician_id, day)
        return {
            "clinician_id": clinician_id,
            "date": day.isoformat(),
            **availability.model_dump(mode="json"),
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error resolving availability for {clinician_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/api/availability/{clinician_id}/weekly/{weekday}")
async def set_weekly_availability(clinician_id: str, weekday: str, request: DayScheduleRequest):
    try:
        clinician = _engine().availability.set_weekly_day(
            clinician_id,
            weekday,
            request.enabled,
            [(r.start, r.end) for r in request.ranges],
        )
        return clinician.availability.model_dump(mode="json")
    except HTTPException:
        raise
    except AvailabilityValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating weekly availability: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/api/availability/{clinician_id}/overrides/{date}")
async def set_availability_override(clinician_id: str, date: str, request: DayScheduleRequest):
    try:
        clinician = _engine().availability.set_date_override(
            clinician_id,
            date,
            request.enabled,
            [(r.start, r.end) for r in request.ranges],
        )
        return clinician.availability.model_dump(mode="json")
    except HTTPException:
        raise
    except AvailabilityValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error setting availability override: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/api/availability/{clinician_id}/overrides/{date}")
async def remove_availability_override(clinician_id: str, date: str):
    try:
        removed = _engine().availability.remove_date_override(clinician_id, date)
        if not removed:
            raise HTTPException(status_code=404, detail=f"No override on {date}")
        return {"message": "Override removed."}
    except HTTPException:
        raise
    except AvailabilityValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error removing availability override: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/availability/{clinician_id}/overrides/copy")
async def copy_availability_override(clinician_id: str, request: CopyOverrideRequest):
    try:
        written = _engine().availability.copy_date_override(
            clinician_id, request.source_date, request.target_dates
        )
        return {"copied_to": [d.isoformat() for d in written]}
    except HTTPException:
        raise
    except AvailabilityValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error copying availability: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Slots & conflicts
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@router.get("/api/slots/{clinician_id}/{date}")
async def get_slots(clinician_id: str, date: str, width: Optional[int] = None):
    """Bookable slots with occupancy (informational; slots may be shared)."""
    try:
        if width is None:
            width = settings.SLOT_INTERVAL_MINUTES
        if width <= 0:
            raise HTTPException(status_code=400, detail="width must be positive")
        day = _date_or_400(date)
        slots = _engine().slots.slots_for(clinician_id, day, width)
        return {
            "clinician_id": clinician_id,
            "date": day.isoformat(),
            "slots": [s.model_dump() for s in slots],
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error generating slots for {clinician_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/appointments/conflicts")
async def check_conflicts(request: ConflictCheckRequest):
    try:
        candidate = ConflictCandidate(
            clinician_id=request.clinician_id,
            date=_date_or_400(request.date),
            time=request.time,
            duration_minutes=request.duration_minutes,
            appointment_id=request.appointment_id,
        )
        return _engine().lifecycle.check_conflicts(candidate).model_dump(mode="json")
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error checking conflicts: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Appointments
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@router.post("/api/appointments")
async def book_appointments(request: BookingRequest):
    """
    Book one appointment per selected date/time.
    409 with the conflicts when confirmation is needed.
    """
    try:
        result = _engine().lifecycle.book(request)
        return result.model_dump(mode="json")
    except HTTPException:
        raise
    except BookingValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConflictConfirmationRequired as e:
        raise HTTPException(status_code=409, detail=_confirmation_detail(e))
    except Exception as e:
        logger.error(f"Error booking appointments: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/appointments/{appointment_id}")
async def get_appointment(appointment_id: str):
    try:
        return _engine().lifecycle.get(appointment_id).model_dump(mode="json")
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting appointment {appointment_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/appointments/{appointment_id}/reschedule")
async def reschedule_appointment(appointment_id: str, request: RescheduleRequest):
    try:
        result = _engine().lifecycle.reschedule(
            appointment_id,
            request.date,
            request.time,
            duration_minutes=request.duration_minutes,
            confirm_conflicts=request.confirm_conflicts,
        )
        return result.model_dump(mode="json")
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BookingValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConflictConfirmationRequired as e:
        raise HTTPException(status_code=409, detail=_confirmation_detail(e))
    except Exception as e:
        logger.error(f"Error rescheduling {appointment_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/appointments/{appointment_id}/transfer")
async def transfer_appointment(appointment_id: str, request: TransferRequest):
    try:
        result = _engine().lifecycle.transfer(
            appointment_id,
            request.clinician_id,
            confirm_conflicts=request.confirm_conflicts,
        )
        return result.model_dump(mode="json")
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BookingValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConflictConfirmationRequired as e:
        raise HTTPException(status_code=409, detail=_confirmation_detail(e))
    except Exception as e:
        logger.error(f"Error transferring {appointment_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/appointments/{appointment_id}/status")
async def change_appointment_status(appointment_id: str, request: StatusChangeRequest):
    """Change status; completing an appointment triggers allowance and billing."""
    try:
        outcome = _engine().lifecycle.change_status(
            appointment_id,
            request.status.strip().lower(),
            is_extra_treatment=request.is_extra_treatment,
        )
        return outcome.model_dump(mode="json")
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error changing status of {appointment_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/api/appointments/{appointment_id}")
async def delete_appointment(appointment_id: str):
    try:
        _engine().lifecycle.delete(appointment_id)
        return {"message": "Appointment deleted."}
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error deleting {appointment_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
