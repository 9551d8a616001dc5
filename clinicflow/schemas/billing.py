from pydantic import BaseModel, Field
from typing import Any, Optional, List


class PackagePurchaseRequest(BaseModel):
    patient_id: str
    total_sessions: int
    amount: float
    discount_percent: Optional[float] = None
    name: str = ""
    description: Optional[str] = None
    clinician_id: str = ""
    clinician_name: str = ""


class PaymentRequest(BaseModel):
    payment_mode: str = "Cash"
    amount: Optional[float] = None
    reference: Optional[str] = None


class BillingImportRequest(BaseModel):
    """Rows as JSON, a CSV export as text, or a CSV already in the bucket."""
    rows: List[dict[str, Any]] = Field(default_factory=list)
    csv: Optional[str] = None
    blob_path: Optional[str] = None


class RolloverRequest(BaseModel):
    today: Optional[str] = None
