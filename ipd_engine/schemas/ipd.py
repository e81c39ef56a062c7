# FILE: ipd_engine/schemas/ipd.py
from __future__ import annotations
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ipd_engine.core.config import settings

# =====================================================================
# ------------------------------- Masters ------------------------------
# =====================================================================

TRANSFER_TYPES = {"transfer", "upgrade", "downgrade", "isolation", "operational"}
TRANSFER_PRIORITIES = {"routine", "urgent"}
MANUAL_BED_STATES = {"vacant", "reserved", "preoccupied"}


def _one_of(v: Optional[str], allowed: set, field: str) -> Optional[str]:
    if v is not None and v not in allowed:
        raise ValueError(f"{field} must be one of {sorted(allowed)}")
    return v


class WardIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    code: str = Field(..., min_length=1, max_length=20)
    floor: Optional[str] = ""


class WardUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    code: Optional[str] = Field(None, min_length=1, max_length=20)
    floor: Optional[str] = None
    is_active: Optional[bool] = None


class WardOut(WardIn):
    id: int
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class RoomIn(BaseModel):
    ward_id: int = Field(..., gt=0)
    number: str = Field(..., min_length=1, max_length=30)
    type: Optional[str] = "General"


class RoomUpdateIn(BaseModel):
    ward_id: Optional[int] = Field(None, gt=0)
    number: Optional[str] = Field(None, min_length=1, max_length=30)
    type: Optional[str] = None
    is_active: Optional[bool] = None


class RoomOut(RoomIn):
    id: int
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class BedIn(BaseModel):
    room_id: int = Field(..., gt=0)
    code: str = Field(..., min_length=1, max_length=30)
    note: Optional[str] = ""


class BedUpdateIn(BaseModel):
    room_id: Optional[int] = Field(None, gt=0)
    code: Optional[str] = Field(None, min_length=1, max_length=30)
    note: Optional[str] = None
    is_active: Optional[bool] = None


class BedOut(BaseModel):
    id: int
    room_id: int
    code: str
    state: str
    effective_state: Optional[str] = None  # reserved-but-expired reads as vacant
    reserved_until: Optional[datetime] = None
    reserved_by_transfer_id: Optional[int] = None
    note: Optional[str] = ""
    is_active: bool = True
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class BedStateIn(BaseModel):
    state: str  # vacant / reserved / preoccupied
    reserved_until: Optional[datetime] = None
    note: Optional[str] = Field(None, max_length=255)

    @field_validator("state")
    @classmethod
    def check_state(cls, v):
        return _one_of(v, MANUAL_BED_STATES, "state")


# =====================================================================
# ----------------------------- Bed Rates ------------------------------
# =====================================================================


class BedRateIn(BaseModel):
    room_type: str = Field(..., min_length=1, max_length=30)  # e.g. "General", "Private", "ICU"
    daily_rate: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    effective_from: date
    effective_to: Optional[date] = None  # inclusive; null = open-ended

    @model_validator(mode="after")
    def validate_dates(self) -> "BedRateIn":
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to must be >= effective_from")
        return self


class BedRateUpdateIn(BaseModel):
    daily_rate: Optional[Decimal] = Field(None, ge=0, max_digits=12, decimal_places=2)
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    is_active: Optional[bool] = None


class BedRateOut(BedRateIn):
    id: int
    is_active: bool = True
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# =====================================================================
# ---------------------------- Admissions ------------------------------
# =====================================================================

ADMISSION_TYPES = {"planned", "emergency", "daycare"}
PAYOR_TYPES = {"cash", "insurance", "tpa"}
ADMISSION_STATUSES = {"admitted", "discharged", "cancelled"}


class AdmissionIn(BaseModel):
    patient_id: int = Field(..., gt=0)
    bed_id: int = Field(..., gt=0)  # allocate on create
    department_id: Optional[int] = None
    practitioner_user_id: Optional[int] = None
    primary_nurse_user_id: Optional[int] = None
    admission_type: str = "planned"  # planned/emergency/daycare
    admitted_at: Optional[datetime] = None
    expected_discharge_at: Optional[datetime] = None
    payor_type: Optional[str] = "cash"
    insurer_name: Optional[str] = ""
    policy_number: Optional[str] = ""
    preliminary_diagnosis: Optional[str] = ""
    care_plan: Optional[str] = ""

    @field_validator("admission_type")
    @classmethod
    def check_admission_type(cls, v):
        return _one_of(v, ADMISSION_TYPES, "admission_type")

    @field_validator("payor_type")
    @classmethod
    def check_payor_type(cls, v):
        return _one_of(v, PAYOR_TYPES, "payor_type")


class AdmissionUpdateIn(BaseModel):
    """Metadata only; bed changes go through the transfer workflow."""
    department_id: Optional[int] = None
    practitioner_user_id: Optional[int] = None
    primary_nurse_user_id: Optional[int] = None
    admission_type: Optional[str] = None
    expected_discharge_at: Optional[datetime] = None
    payor_type: Optional[str] = None
    insurer_name: Optional[str] = None
    policy_number: Optional[str] = None
    preliminary_diagnosis: Optional[str] = None
    care_plan: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("admission_type")
    @classmethod
    def check_admission_type(cls, v):
        return _one_of(v, ADMISSION_TYPES, "admission_type")

    @field_validator("payor_type")
    @classmethod
    def check_payor_type(cls, v):
        return _one_of(v, PAYOR_TYPES, "payor_type")


class AdmissionCancelIn(BaseModel):
    reason: Optional[str] = Field("", max_length=255)


class AdmissionDischargeIn(BaseModel):
    discharged_at: Optional[datetime] = None


class AdmissionOut(BaseModel):
    id: int
    display_code: Optional[str] = None
    admission_code: Optional[str] = None

    patient_id: int
    department_id: Optional[int] = None
    practitioner_user_id: Optional[int] = None
    primary_nurse_user_id: Optional[int] = None

    admission_type: Optional[str] = None
    admitted_at: Optional[datetime] = None
    expected_discharge_at: Optional[datetime] = None
    discharged_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = ""

    payor_type: Optional[str] = None
    insurer_name: Optional[str] = ""
    policy_number: Optional[str] = ""
    preliminary_diagnosis: Optional[str] = ""
    care_plan: Optional[str] = ""

    status: str
    current_bed_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


# -------------------------------------------------------------------------------
# ----------------------------bed transfer---------------------------------------
# -------------------------------------------------------------------------------


class TransferRequestIn(BaseModel):
    # optional at request stage (you can select later in assign step)
    to_bed_id: Optional[int] = Field(None, gt=0)

    transfer_type: str = Field("transfer")
    priority: str = Field("routine")

    reason: str = Field(..., max_length=255)
    request_note: Optional[str] = ""

    scheduled_at: Optional[datetime] = None
    reserve_minutes: int = Field(
        settings.DEFAULT_RESERVE_MINUTES, ge=1, le=settings.MAX_RESERVE_MINUTES)

    @field_validator("transfer_type", "priority")
    @classmethod
    def check_choice(cls, v, info):
        allowed = TRANSFER_TYPES if info.field_name == "transfer_type" else TRANSFER_PRIORITIES
        return _one_of(v, allowed, info.field_name)


class TransferApproveIn(BaseModel):
    approve: bool = True
    approval_note: Optional[str] = ""
    rejected_reason: Optional[str] = Field("", max_length=255)


class TransferAssignBedIn(BaseModel):
    to_bed_id: int = Field(..., gt=0)
    scheduled_at: Optional[datetime] = None
    reserve_minutes: int = Field(
        settings.DEFAULT_RESERVE_MINUTES, ge=1, le=settings.MAX_RESERVE_MINUTES)


class TransferCompleteIn(BaseModel):
    vacated_at: Optional[datetime] = None
    occupied_at: Optional[datetime] = None
    handover: Optional[Dict[str, Any]] = None  # nursing handover checklist


class TransferCancelIn(BaseModel):
    reason: Optional[str] = Field("", max_length=255)


# =====================================================================
# ------------------------- Bed charge preview -------------------------
# =====================================================================


class BedChargeDay(BaseModel):
    date: date
    bed_id: Optional[int]
    bed_code: Optional[str] = None
    room_type: str
    rate: Decimal
    missing_rate: bool = False


class BedChargePreviewOut(BaseModel):
    admission_id: int
    from_date: date
    to_date: date
    days: List[BedChargeDay]
    total_amount: Decimal
    missing_rate_days: int = 0
