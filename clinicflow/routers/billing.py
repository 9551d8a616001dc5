import logging
from typing import Optional
from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse

from clinicflow import settings
from clinicflow.dependencies import get_engine, get_gcs
from clinicflow.engine.billing import PaymentError, export_csv, read_import_csv
from clinicflow.engine.cycles import summarize
from clinicflow.engine.packages import PackageRemovalError, PackageValidationError
from clinicflow.engine.store import RecordNotFoundError
from clinicflow.engine.validators import parse_date
from clinicflow.schemas.billing import (
    BillingImportRequest,
    PackagePurchaseRequest,
    PaymentRequest,
    RolloverRequest,
)

router = APIRouter()
logger = logging.getLogger("clinicflow-server")


def _engine():
    engine = get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Packages
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@router.post("/api/packages")
async def purchase_package(request: PackagePurchaseRequest):
    try:
        result = _engine().packages.purchase(
            request.patient_id,
            request.total_sessions,
            request.amount,
            discount_percent=request.discount_percent,
            name=request.name,
            description=request.description,
            clinician_id=request.clinician_id,
            clinician_name=request.clinician_name,
        )
        return result.model_dump(mode="json")
    except HTTPException:
        raise
    except PackageValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error purchasing package: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/packages/{patient_id}/sessions")
async def get_package_sessions(patient_id: str):
    try:
        sessions = _engine().packages.package_appointments(patient_id)
        return {
            "patient_id": patient_id,
            "sessions": [s.model_dump(mode="json") for s in sessions],
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error listing package sessions: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/api/packages/{patient_id}")
async def remove_packages(patient_id: str):
    """Remove all packages of a patient with their sessions and billing."""
    try:
        return _engine().packages.remove(patient_id).model_dump(mode="json")
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PackageRemovalError as e:
        raise HTTPException(
            status_code=500,
            detail={"message": "Package removal failed and was rolled back", "failed": e.failed},
        )
    except Exception as e:
        logger.error(f"Error removing packages for {patient_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Billing records
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@router.get("/api/billing")
async def list_billing(patient_id: Optional[str] = None):
    try:
        records = _engine().billing.records(patient_id)
        records.sort(key=lambda r: (r.date, r.created_at))
        return {"count": len(records), "records": [r.model_dump(mode="json") for r in records]}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error listing billing: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/billing/sync")
async def sync_billing():
    """Bill completed appointments that have no record yet. Safe to repeat."""
    try:
        return _engine().billing.sync_completed_appointments().model_dump(mode="json")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error syncing billing: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/billing/vip-corrections")
async def apply_vip_corrections():
    try:
        corrected = _engine().billing.apply_vip_corrections()
        return {"corrected": corrected}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error applying VIP corrections: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/billing/import")
async def import_billing(request: BillingImportRequest):
    try:
        rows = list(request.rows)
        if request.csv:
            rows.extend(read_import_csv(request.csv))
        if request.blob_path:
            gcs_client = get_gcs()
            content = gcs_client.read_file_as_string(request.blob_path) if gcs_client else None
            if content is None:
                raise HTTPException(status_code=404, detail=f"Import file {request.blob_path} not found")
            rows.extend(read_import_csv(content))
        if not rows:
            raise HTTPException(status_code=400, detail="No rows to import")

        return _engine().billing.import_rows(rows).model_dump(mode="json")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error importing billing: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/billing/{billing_id}/pay")
async def pay_billing(billing_id: str, request: PaymentRequest):
    try:
        record = _engine().billing.record_payment(
            billing_id, request.payment_mode, amount=request.amount, reference=request.reference
        )
        return record.model_dump(mode="json")
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PaymentError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Error recording payment for {billing_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/api/billing/{billing_id}")
async def delete_billing(billing_id: str):
    try:
        _engine().billing.delete(billing_id)
        return {"message": "Billing record deleted."}
    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error deleting billing {billing_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Billing cycles
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@router.get("/api/billing/cycles")
async def list_cycles():
    try:
        return {"cycles": [c.model_dump(mode="json") for c in _engine().cycles.list_cycles()]}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error listing cycles: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/billing/cycles/current")
async def get_current_cycle():
    try:
        engine = _engine()
        cycle = engine.cycles.current_cycle()
        return {
            "cycle": cycle.model_dump(mode="json"),
            "summary": summarize(cycle, engine.billing.records()).model_dump(mode="json"),
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting current cycle: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/billing/cycles/{cycle_id}/summary")
async def get_cycle_summary(cycle_id: str):
    try:
        return _engine().cycles.summarize(cycle_id).model_dump(mode="json")
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error summarizing cycle {cycle_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/billing/cycles/{cycle_id}/export", response_class=PlainTextResponse)
async def export_cycle(cycle_id: str):
    """CSV of the cycle's records; archived to the bucket when GCS is enabled."""
    try:
        engine = _engine()
        cycle = engine.cycles.get_cycle(cycle_id)
        records = [
            r for r in engine.billing.records()
            if cycle.start_date <= r.date <= cycle.end_date
        ]
        records.sort(key=lambda r: (r.date, r.created_at))
        content = export_csv(records)

        if settings.USE_GCS:
            gcs_client = get_gcs()
            if gcs_client is not None:
                gcs_client.create_file_from_string(
                    content, f"billing_exports/billing-{cycle.cycle_id}.csv", content_type="text/csv"
                )
        return PlainTextResponse(content, media_type="text/csv")
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error exporting cycle {cycle_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/billing/cycles/rollover")
async def rollover_cycle(request: Optional[RolloverRequest] = None):
    """Close the active cycle and activate the next month."""
    try:
        today = None
        if request is not None and request.today:
            today = parse_date(request.today)
            if today is None:
                raise HTTPException(status_code=400, detail=f"Invalid date '{request.today}'")
        return _engine().cycles.rollover(today).model_dump(mode="json")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error rolling over billing cycle: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
