"""
Clinic Data Model — appointments, availability, allowances, billing.

Every entity the scheduling and billing engine reads or writes is a
pydantic model here, so the store can snapshot the whole clinic as one
JSON document.
"""

from __future__ import annotations

import uuid
import datetime as dt
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from clinicflow import settings
from clinicflow.engine.validators import normalize_time


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED)


class PatientStatus(str, Enum):
    PENDING = "pending"
    ONGOING = "ongoing"
    COMPLETED = "completed"


class PatientCategory(str, Enum):
    """Billing category of a patient. Closed set; see billing.BILLING_RULES."""

    REFERRAL = "REFERRAL"
    VIP = "VIP"
    PAID = "PAID"
    SUBSIDIZED = "SUBSIDIZED"
    AFFILIATE = "AFFILIATE"
    STAFF = "STAFF"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, label: str | None) -> PatientCategory:
        """Map a free-text organisation label onto a category (unknown -> OTHER)."""
        key = (label or "").strip().upper()
        if key in cls.__members__:
            return cls[key]
        return _CATEGORY_ALIASES.get(key, cls.OTHER)


_CATEGORY_ALIASES = {
    "DYES": PatientCategory.SUBSIDIZED,
    "GETHNA": PatientCategory.AFFILIATE,
    "GETHHMA": PatientCategory.AFFILIATE,
    "OTHERS": PatientCategory.OTHER,
}


class PaymentType(str, Enum):
    WITH_CONCESSION = "with"
    WITHOUT_CONCESSION = "without"


class BillingStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    AUTO_PAID = "Auto-Paid"

    @property
    def is_settled(self) -> bool:
        return self in (BillingStatus.COMPLETED, BillingStatus.AUTO_PAID)


class CycleStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


WEEKDAY_NAMES = [
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10].upper()}"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Availability
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TimeRange(BaseModel):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return normalize_time(v)


class DayAvailability(BaseModel):
    enabled: bool = True
    ranges: list[TimeRange] = Field(default_factory=list)

    @classmethod
    def closed(cls) -> DayAvailability:
        return cls(enabled=False, ranges=[])

    @classmethod
    def default(cls) -> DayAvailability:
        return cls(
            enabled=True,
            ranges=[TimeRange(start=settings.DEFAULT_DAY_START, end=settings.DEFAULT_DAY_END)],
        )


class AvailabilitySchedule(BaseModel):
    """Weekly template plus date-specific overrides (overrides win)."""

    weekly: dict[str, DayAvailability] = Field(default_factory=dict)
    date_overrides: dict[str, DayAvailability] = Field(default_factory=dict)

    @field_validator("weekly")
    @classmethod
    def _known_weekdays(cls, v: dict[str, DayAvailability]) -> dict[str, DayAvailability]:
        normalized = {}
        for day_name, availability in v.items():
            key = day_name.strip().lower()
            if key not in WEEKDAY_NAMES:
                raise ValueError(f"Unknown weekday '{day_name}'")
            normalized[key] = availability
        return normalized


class Clinician(BaseModel):
    clinician_id: str
    name: str
    availability: AvailabilitySchedule = Field(default_factory=AvailabilitySchedule)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Appointments
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class PackageLink(BaseModel):
    package_id: str
    session_number: int
    total_sessions: int

    @model_validator(mode="after")
    def _session_within_package(self) -> PackageLink:
        if not 1 <= self.session_number <= self.total_sessions:
            raise ValueError(
                f"session_number {self.session_number} outside 1..{self.total_sessions}"
            )
        return self


class Appointment(BaseModel):
    appointment_id: str = Field(default_factory=lambda: new_id("APT"))
    patient_id: str
    patient_name: str = ""
    clinician_id: str = ""
    clinician_name: str = ""
    date: Optional[dt.date] = None
    time: Optional[str] = None
    duration_minutes: int = Field(default=settings.DEFAULT_DURATION_MINUTES, gt=0)
    status: AppointmentStatus = AppointmentStatus.PENDING
    notes: Optional[str] = None
    package: Optional[PackageLink] = None
    is_extra_treatment: bool = False
    is_consultation: bool = False
    # Per-session rate override; the standard rate applies when unset
    amount: Optional[float] = None
    created_at: datetime = Field(default_factory=_now)

    @field_validator("date", mode="before")
    @classmethod
    def _blank_date(cls, v: Any) -> Any:
        return None if v == "" else v

    @field_validator("time", mode="before")
    @classmethod
    def _normalize_time(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        return normalize_time(v)

    @property
    def is_scheduled(self) -> bool:
        return self.date is not None and self.time is not None

    @property
    def is_package_session(self) -> bool:
        return self.package is not None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Patients
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SessionAllowance(BaseModel):
    free_quota: int = Field(default_factory=lambda: settings.SUBSIDIZED_FREE_QUOTA)
    free_sessions_used: int = 0
    pending_paid_sessions: int = 0
    pending_charge_amount: float = 0.0
    processed_appointment_ids: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=_now)

    @property
    def remaining_free_sessions(self) -> int:
        return max(0, self.free_quota - self.free_sessions_used)


class PackageBaseline(BaseModel):
    """Patient package fields as they were before the first package purchase."""

    total_sessions_required: Optional[int] = None
    remaining_sessions: Optional[int] = None
    payment_type: PaymentType = PaymentType.WITHOUT_CONCESSION
    concession_percent: Optional[float] = None
    package_name: Optional[str] = None
    package_amount: Optional[float] = None
    package_description: Optional[str] = None


class PatientRecord(BaseModel):
    patient_id: str
    name: str = ""
    category: PatientCategory = PatientCategory.OTHER
    status: PatientStatus = PatientStatus.PENDING
    payment_type: PaymentType = PaymentType.WITHOUT_CONCESSION
    concession_percent: Optional[float] = None
    total_sessions_required: Optional[int] = None
    remaining_sessions: Optional[int] = None
    session_allowance: Optional[SessionAllowance] = None
    assigned_clinician: Optional[str] = None
    email: Optional[str] = None
    package_name: Optional[str] = None
    package_amount: Optional[float] = None
    package_description: Optional[str] = None
    package_baseline: Optional[PackageBaseline] = None

    @field_validator("category", mode="before")
    @classmethod
    def _parse_category(cls, v: Any) -> Any:
        if isinstance(v, PatientCategory):
            return v
        return PatientCategory.parse(v)

    def baseline(self) -> PackageBaseline:
        return PackageBaseline(
            total_sessions_required=self.total_sessions_required,
            remaining_sessions=self.remaining_sessions,
            payment_type=self.payment_type,
            concession_percent=self.concession_percent,
            package_name=self.package_name,
            package_amount=self.package_amount,
            package_description=self.package_description,
        )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Billing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BillingRecord(BaseModel):
    billing_id: str = Field(default_factory=lambda: new_id("BILL"))
    appointment_id: Optional[str] = None
    patient_id: str
    patient_name: str = ""
    clinician_name: str = ""
    amount: float = 0.0
    # List rate before the category rule was applied (audit)
    standard_amount: Optional[float] = None
    status: BillingStatus = BillingStatus.PENDING
    payment_mode: Optional[str] = None
    # UTR / card slip number for non-cash payments
    payment_reference: Optional[str] = None
    date: dt.date
    category: Optional[PatientCategory] = None
    is_extra_treatment: bool = False
    package_id: Optional[str] = None
    package_sessions: Optional[int] = None
    created_at: datetime = Field(default_factory=_now)
    paid_at: Optional[datetime] = None
    corrected_at: Optional[datetime] = None


class Package(BaseModel):
    package_id: str = Field(default_factory=lambda: new_id("PKG"))
    patient_id: str
    name: str = ""
    description: Optional[str] = None
    total_sessions: int = Field(gt=0)
    amount: float = Field(gt=0)
    discount_percent: Optional[float] = None
    billing_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class BillingCycle(BaseModel):
    cycle_id: str
    month: int
    year: int
    start_date: dt.date
    end_date: dt.date
    status: CycleStatus = CycleStatus.PENDING
    closed_at: Optional[datetime] = None
