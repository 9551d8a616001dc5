from pydantic import BaseModel, Field
from typing import Optional, List


class TimeRangeIn(BaseModel):
    start: str
    end: str


class DayScheduleRequest(BaseModel):
    enabled: bool = True
    ranges: List[TimeRangeIn] = Field(default_factory=list)


class CopyOverrideRequest(BaseModel):
    source_date: str
    target_dates: List[str]


class ConflictCheckRequest(BaseModel):
    clinician_id: str
    date: str
    time: str
    duration_minutes: int = 30
    appointment_id: Optional[str] = None


class RescheduleRequest(BaseModel):
    date: str
    time: str
    duration_minutes: Optional[int] = None
    confirm_conflicts: bool = False


class TransferRequest(BaseModel):
    clinician_id: str
    confirm_conflicts: bool = False


class StatusChangeRequest(BaseModel):
    status: str
    is_extra_treatment: bool = False
