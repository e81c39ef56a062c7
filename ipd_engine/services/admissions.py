# FILE: ipd_engine/services/admissions.py
"""
Admission binder: ties a patient to a bed.

* create   -> bed vacant -> occupied, bed assignment opened
* cancel / discharge -> bed occupied -> vacant, assignment closed
* commit_transfer    -> the one step that moves bed state and
  ``current_bed_id`` together (called by transfer completion)

A patient has at most one admitted stay: ``active_patient_id`` mirrors
``patient_id`` while admitted and is NULL afterwards, under a UNIQUE key.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ipd_engine.core.errors import (
    ConflictError,
    NotFound,
    PreconditionFailed,
    ValidationError,
    positive_id,
)
from ipd_engine.db.session import atomic
from ipd_engine.models.ipd import (
    IpdAdmission,
    IpdBedAssignment,
    IpdTransfer,
)
from ipd_engine.schemas.ipd import AdmissionIn, AdmissionUpdateIn
from ipd_engine.services import bed_state, capabilities as caps
from ipd_engine.services.patients import DbPatientDirectory, PatientDirectory
from ipd_engine.utils.timezone import now_utc_naive, parse_dt_to_utc_naive

logger = logging.getLogger(__name__)

ADMITTED = "admitted"
DISCHARGED = "discharged"
CANCELLED = "cancelled"

# transfer statuses that still hold (or may still take) a bed
OPEN_TRANSFER_STATUSES = ("requested", "approved", "scheduled")


def _uid(user) -> Optional[int]:
    return getattr(user, "id", None)


def _get_adm(db: Session, admission_id: int) -> IpdAdmission:
    adm = db.get(IpdAdmission, positive_id(admission_id, "admission_id"))
    if not adm:
        raise NotFound("Admission", admission_id)
    return adm


def _active_assignment(db: Session, admission_id: int) -> Optional[IpdBedAssignment]:
    return (
        db.query(IpdBedAssignment)
        .filter(IpdBedAssignment.admission_id == admission_id,
                IpdBedAssignment.to_ts.is_(None))
        .order_by(IpdBedAssignment.from_ts.desc(), IpdBedAssignment.id.desc())
        .first()
    )


def _open_transfer_id(db: Session, admission_id: int) -> Optional[int]:
    row = (
        db.query(IpdTransfer.id)
        .filter(IpdTransfer.admission_id == admission_id,
                IpdTransfer.status.in_(OPEN_TRANSFER_STATUSES))
        .first()
    )
    return row[0] if row else None


# ---------------------------------------------------------------------
# Create / read / update
# ---------------------------------------------------------------------
def create_admission(
    db: Session,
    user,
    payload: AdmissionIn,
    *,
    patients: Optional[PatientDirectory] = None,
) -> IpdAdmission:
    caps.require(user, caps.ADMIT_PATIENT)
    patient_id = positive_id(payload.patient_id, "patient_id")
    bed_id = positive_id(payload.bed_id, "bed_id")

    directory = patients or DbPatientDirectory(db)
    if directory.get_patient(patient_id) is None:
        raise NotFound("Patient", patient_id)

    now = now_utc_naive()
    admitted_at = parse_dt_to_utc_naive(payload.admitted_at, "admitted_at") or now
    expected_discharge_at = parse_dt_to_utc_naive(payload.expected_discharge_at,
                                                  "expected_discharge_at")

    with atomic(db):
        bed_state.load_bed(db, bed_id)

        existing = (
            db.query(IpdAdmission.id)
            .filter(IpdAdmission.active_patient_id == patient_id)
            .first()
        )
        if existing:
            raise ConflictError(
                "Patient already has an active admission",
                context={"patient_id": patient_id, "admission_id": existing[0]},
            )

        adm = IpdAdmission(
            patient_id=patient_id,
            active_patient_id=patient_id,
            department_id=payload.department_id,
            practitioner_user_id=payload.practitioner_user_id,
            primary_nurse_user_id=payload.primary_nurse_user_id,
            admission_type=payload.admission_type,
            admitted_at=admitted_at,
            expected_discharge_at=expected_discharge_at,
            payor_type=payload.payor_type or "cash",
            insurer_name=payload.insurer_name or "",
            policy_number=payload.policy_number or "",
            preliminary_diagnosis=payload.preliminary_diagnosis or "",
            care_plan=payload.care_plan or "",
            current_bed_id=bed_id,
            status=ADMITTED,
            created_by=_uid(user),
            created_at=now,
        )
        db.add(adm)
        try:
            db.flush()
        except IntegrityError as exc:
            # lost the race against a concurrent admission of the same patient
            raise ConflictError(
                "Patient already has an active admission",
                context={"patient_id": patient_id},
            ) from exc
        adm.admission_code = f"IP-{adm.id:06d}"

        # occupy bed + create assignment
        bed_state.occupy(db, bed_id, now=now)
        db.add(
            IpdBedAssignment(admission_id=adm.id,
                             bed_id=bed_id,
                             from_ts=admitted_at,
                             reason="admission"))

    db.refresh(adm)
    logger.info("admission %s: patient %s admitted to bed %s", adm.id,
                patient_id, bed_id)
    return adm


def list_admissions(
    db: Session,
    user,
    *,
    status: Optional[str] = None,
    patient_id: Optional[int] = None,
    limit: int = 300,
) -> List[IpdAdmission]:
    caps.require(user, caps.VIEW)
    q = db.query(IpdAdmission)
    if status:
        q = q.filter(IpdAdmission.status == status)
    if patient_id:
        q = q.filter(IpdAdmission.patient_id == patient_id)
    return q.order_by(IpdAdmission.id.desc()).limit(max(1, min(limit, 500))).all()


def get_admission(db: Session, user, admission_id: int) -> IpdAdmission:
    caps.require(user, caps.VIEW)
    return _get_adm(db, admission_id)


def update_admission(db: Session, user, admission_id: int,
                     payload: AdmissionUpdateIn) -> IpdAdmission:
    """Only basic fields; bed changes require a transfer."""
    caps.require(user, caps.ADMIT_PATIENT)
    adm = _get_adm(db, admission_id)
    if adm.status != ADMITTED:
        raise PreconditionFailed(f"Admission is {adm.status}; it can no longer be edited")

    data: Dict[str, Any] = payload.model_dump(exclude_unset=True)
    if "expected_discharge_at" in data:
        data["expected_discharge_at"] = parse_dt_to_utc_naive(
            data["expected_discharge_at"], "expected_discharge_at")

    with atomic(db):
        for k, v in data.items():
            setattr(adm, k, v)
    db.refresh(adm)
    return adm


# ---------------------------------------------------------------------
# End of stay
# ---------------------------------------------------------------------
def _end_stay(db: Session, adm: IpdAdmission, *, status: str,
              at: datetime, values: Dict[str, Any]) -> bool:
    """
    admitted -> ``status``: frees the bed and closes the assignment.
    Returns False when another request already moved the admission on.
    """
    open_id = _open_transfer_id(db, adm.id)
    if open_id:
        raise ConflictError(
            "Admission has a transfer in progress; complete or cancel it first",
            context={"admission_id": adm.id, "transfer_id": open_id},
        )

    res = db.execute(
        update(IpdAdmission)
        .where(IpdAdmission.id == adm.id, IpdAdmission.status == ADMITTED)
        .values(status=status, active_patient_id=None, **values)
        .execution_options(synchronize_session=False))
    if res.rowcount != 1:
        return False

    asg = _active_assignment(db, adm.id)
    if asg:
        asg.to_ts = max(at, asg.from_ts) if asg.from_ts else at
        asg.reason = status

    if adm.current_bed_id:
        bed = bed_state.load_bed(db, adm.current_bed_id)
        if bed_state.effective_state(bed) == bed_state.OCCUPIED:
            bed_state.vacate(db, bed.id)
        else:
            logger.warning("admission %s: bed %s was %s at %s, left as is",
                           adm.id, bed.id, bed.state, status)
    return True


def _finish(db: Session, adm: IpdAdmission, target: str,
            at: datetime, values: Dict[str, Any]) -> IpdAdmission:
    if adm.status == target:
        return adm
    if adm.status != ADMITTED:
        raise PreconditionFailed(f"Admission is {adm.status}; cannot mark {target}")

    with atomic(db):
        moved = _end_stay(db, adm, status=target, at=at, values=values)
    db.refresh(adm)
    if not moved and adm.status != target:
        raise PreconditionFailed(f"Admission is {adm.status}; cannot mark {target}")
    if moved:
        logger.info("admission %s %s", adm.id, target)
    return adm


def cancel_admission(db: Session, user, admission_id: int, *,
                     reason: Optional[str] = "") -> IpdAdmission:
    """Idempotent: a cancelled admission is returned unchanged."""
    caps.require(user, caps.ADMIT_PATIENT)
    adm = _get_adm(db, admission_id)
    now = now_utc_naive()
    return _finish(db, adm, CANCELLED, now, {
        "cancelled_at": now,
        "cancel_reason": (reason or "").strip(),
    })


def discharge_admission(db: Session, user, admission_id: int, *,
                        discharged_at: Any = None) -> IpdAdmission:
    caps.require(user, caps.ADMIT_PATIENT)
    adm = _get_adm(db, admission_id)
    at = parse_dt_to_utc_naive(discharged_at, "discharged_at") or now_utc_naive()
    if adm.status == ADMITTED and adm.admitted_at and at < adm.admitted_at:
        raise ValidationError("discharged_at must be after admitted_at")
    return _finish(db, adm, DISCHARGED, at, {"discharged_at": at})


# ---------------------------------------------------------------------
# Transfer commit
# ---------------------------------------------------------------------
def commit_transfer(
    db: Session,
    adm: IpdAdmission,
    transfer: IpdTransfer,
    *,
    vacated_at: datetime,
    occupied_at: datetime,
    now: Optional[datetime] = None,
) -> IpdBedAssignment:
    """
    Move the patient from the current bed to ``transfer.to_bed_id``.
    Runs inside the caller's transaction; any failure rolls the whole
    move back.
    """
    if adm.status != ADMITTED:
        raise PreconditionFailed(f"Admission is {adm.status}; transfer not allowed")
    to_bed_id = transfer.to_bed_id
    if not to_bed_id:
        raise PreconditionFailed("Assign target bed first")

    cur_asg = _active_assignment(db, adm.id)
    from_bed_id = adm.current_bed_id or (cur_asg.bed_id if cur_asg else None)
    if from_bed_id == to_bed_id:
        raise ValidationError("Target bed must be different from current bed")

    stay_start = cur_asg.from_ts if cur_asg and cur_asg.from_ts else adm.admitted_at
    if stay_start and vacated_at < stay_start:
        raise ValidationError("vacated_at must not be before the current bed stay began",
                              context={"vacated_at": vacated_at.isoformat(),
                                       "stay_start": stay_start.isoformat()})

    # close current assignment
    if cur_asg:
        cur_asg.to_ts = vacated_at
        cur_asg.reason = "transfer_out"
        transfer.from_assignment_id = cur_asg.id

    # free old bed
    if from_bed_id:
        old_bed = bed_state.load_bed(db, from_bed_id)
        if bed_state.effective_state(old_bed, now) == bed_state.OCCUPIED:
            bed_state.vacate(db, from_bed_id, now=now)
        else:
            logger.warning("transfer %s: source bed %s was %s", transfer.id,
                           from_bed_id, old_bed.state)

    # occupy new bed (consumes this transfer's reservation if it still holds one)
    bed_state.occupy(db, to_bed_id, transfer_id=transfer.id, now=now)

    new_asg = IpdBedAssignment(
        admission_id=adm.id,
        bed_id=to_bed_id,
        from_ts=occupied_at,
        to_ts=None,
        reason="transfer_in",
    )
    db.add(new_asg)
    db.flush()

    adm.current_bed_id = to_bed_id
    transfer.from_bed_id = from_bed_id
    transfer.to_assignment_id = new_asg.id
    return new_asg
