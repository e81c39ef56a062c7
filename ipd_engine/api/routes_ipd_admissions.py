# FILE: ipd_engine/api/routes_ipd_admissions.py
from __future__ import annotations
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ipd_engine.api.deps import get_db, current_user as auth_current_user
from ipd_engine.models.ipd import IpdAdmission
from ipd_engine.models.access import User
from ipd_engine.schemas.ipd import (
    AdmissionIn,
    AdmissionUpdateIn,
    AdmissionCancelIn,
    AdmissionDischargeIn,
    AdmissionOut,
)
from ipd_engine.services import admissions, bed_charges
from ipd_engine.utils.resp import ok
from ipd_engine.utils.timezone import iso_utc_z

router = APIRouter(tags=["IPD Admissions"])


def _adm_out(adm: IpdAdmission) -> dict:
    data = AdmissionOut.model_validate(adm).model_dump()
    for k, v in data.items():
        if isinstance(v, datetime):
            data[k] = iso_utc_z(v)
    return data


@router.post("/admissions")
def create_admission(
    payload: AdmissionIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    adm = admissions.create_admission(db, user, payload)
    return ok(_adm_out(adm), 201)


@router.get("/admissions")
def list_admissions(
    status: Optional[str] = None,
    patient_id: Optional[int] = None,
    limit: int = 300,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    rows = admissions.list_admissions(db, user, status=status,
                                      patient_id=patient_id, limit=limit)
    return ok([_adm_out(a) for a in rows])


@router.get("/admissions/{admission_id}")
def get_admission(
    admission_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(_adm_out(admissions.get_admission(db, user, admission_id)))


@router.put("/admissions/{admission_id}")
def update_admission(
    admission_id: int,
    payload: AdmissionUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(_adm_out(admissions.update_admission(db, user, admission_id, payload)))


@router.patch("/admissions/{admission_id}/cancel")
def cancel_admission(
    admission_id: int,
    payload: Optional[AdmissionCancelIn] = None,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    payload = payload or AdmissionCancelIn()
    adm = admissions.cancel_admission(db, user, admission_id, reason=payload.reason)
    return ok(_adm_out(adm))


@router.patch("/admissions/{admission_id}/discharge")
def discharge_admission(
    admission_id: int,
    payload: Optional[AdmissionDischargeIn] = None,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    payload = payload or AdmissionDischargeIn()
    adm = admissions.discharge_admission(db, user, admission_id,
                                         discharged_at=payload.discharged_at)
    return ok(_adm_out(adm))


# ---------------------------------------------------------------------
# Bed charge preview
# ---------------------------------------------------------------------
@router.get("/admissions/{admission_id}/bed-charges/preview")
def preview_bed_charges(
    admission_id: int,
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(bed_charges.preview_bed_charges(db, user, admission_id, from_date, to_date))
