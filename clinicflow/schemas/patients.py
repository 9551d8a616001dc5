from pydantic import BaseModel, Field
from typing import Optional, List

from clinicflow.schemas.scheduling import TimeRangeIn


class RegisterPatientRequest(BaseModel):
    patient_id: str
    name: str = ""
    category: str = "OTHER"
    payment_type: str = "without"
    concession_percent: Optional[float] = None
    total_sessions_required: Optional[int] = None
    email: Optional[str] = None


class WeeklyDayIn(BaseModel):
    enabled: bool = True
    ranges: List[TimeRangeIn] = Field(default_factory=list)


class RegisterClinicianRequest(BaseModel):
    clinician_id: str
    name: str
    weekly: dict[str, WeeklyDayIn] = Field(default_factory=dict)
