import os
from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "ClinicFlow Server is Running",
        "features": ["availability", "slots", "appointments", "packages", "billing", "billing_cycles"],
        "endpoints": {
            "availability": "/api/availability/{clinician_id}/{date}",
            "slots": "/api/slots/{clinician_id}/{date}",
            "conflicts": "/api/appointments/conflicts",
            "appointments": "/api/appointments",
            "packages": "/api/packages",
            "billing_sync": "/api/billing/sync",
            "billing_cycles": "/api/billing/cycles/current",
            "patient_events": "/api/patients/{patient_id}/events",
        }
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "clinicflow",
        "port": os.environ.get("PORT", 8080)
    }
