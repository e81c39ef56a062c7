# FILE: ipd_engine/services/transfers.py
"""
Transfer workflow.

    requested -> approved | rejected | cancelled
    approved  -> scheduled | completed | cancelled
    scheduled -> completed | cancelled

rejected / completed / cancelled are terminal. Every status change is a
conditional UPDATE on the current status, so two people acting on the same
transfer cannot both win; the loser gets PreconditionFailed (or, for cancel,
the already-cancelled transfer back).

Target beds are held with a bed reservation owned by the transfer. Nothing
here locks a bed between steps; each step re-validates what is stored.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ipd_engine.core.config import settings
from ipd_engine.core.errors import (
    BedUnavailableError,
    NotFound,
    PreconditionFailed,
    ValidationError,
    positive_id,
)
from ipd_engine.db.session import atomic
from ipd_engine.models.ipd import IpdAdmission, IpdTransfer, IpdTransferEvent
from ipd_engine.schemas.ipd import (
    TransferApproveIn,
    TransferAssignBedIn,
    TransferCompleteIn,
    TransferRequestIn,
)
from ipd_engine.services import admissions, bed_state, capabilities as caps
from ipd_engine.utils.timezone import now_utc_naive, parse_dt_to_utc_naive

logger = logging.getLogger(__name__)

REQUESTED = "requested"
APPROVED = "approved"
REJECTED = "rejected"
SCHEDULED = "scheduled"
COMPLETED = "completed"
CANCELLED = "cancelled"

OPEN_STATUSES = (REQUESTED, APPROVED, SCHEDULED)
READY_STATUSES = (APPROVED, SCHEDULED)


def _uid(user) -> Optional[int]:
    return getattr(user, "id", None)


def _get_transfer(db: Session, transfer_id: int) -> IpdTransfer:
    t = db.get(IpdTransfer, positive_id(transfer_id, "transfer_id"))
    if not t:
        raise NotFound("Transfer", transfer_id)
    return t


def _reservation_end(now: datetime, scheduled_at: Optional[datetime],
                     minutes: int) -> datetime:
    start = max(now, scheduled_at) if scheduled_at else now
    return start + timedelta(minutes=minutes)


def _advance(db: Session, t: IpdTransfer, from_statuses: Iterable[str],
             to_status: str, **values: Any) -> bool:
    """Status CAS. False when the transfer is no longer in ``from_statuses``."""
    res = db.execute(
        update(IpdTransfer)
        .where(IpdTransfer.id == t.id, IpdTransfer.status.in_(tuple(from_statuses)))
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False))
    db.expire(t, ["status", *values.keys()])
    return res.rowcount == 1


def _event(db: Session, t: IpdTransfer, action: str, from_status: Optional[str],
           to_status: str, user, *, bed_id: Optional[int] = None,
           note: Optional[str] = "") -> None:
    db.add(
        IpdTransferEvent(
            transfer_id=t.id,
            action=action,
            from_status=from_status,
            to_status=to_status,
            bed_id=bed_id,
            actor_id=_uid(user),
            at=now_utc_naive(),
            note=(note or "")[:255],
        ))


# ---------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------
def list_transfers(db: Session, user, admission_id: int) -> List[IpdTransfer]:
    caps.require_any(user, (caps.TRANSFER_VIEW, caps.VIEW))
    admission_id = positive_id(admission_id, "admission_id")
    if not db.get(IpdAdmission, admission_id):
        raise NotFound("Admission", admission_id)
    return (
        db.query(IpdTransfer)
        .filter(IpdTransfer.admission_id == admission_id)
        .order_by(IpdTransfer.requested_at.desc(), IpdTransfer.id.desc())
        .all()
    )


def get_transfer(db: Session, user, transfer_id: int) -> IpdTransfer:
    caps.require_any(user, (caps.TRANSFER_VIEW, caps.VIEW))
    return _get_transfer(db, transfer_id)


# ---------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------
def request_transfer(db: Session, user, admission_id: int,
                     payload: TransferRequestIn) -> IpdTransfer:
    """
    Open a transfer request. When ``to_bed_id`` is given the bed is reserved
    for this transfer; if it cannot be reserved the request is still created
    with no target and a ``target_unavailable`` event explains why.
    """
    caps.require(user, caps.TRANSFER_CREATE)
    admission_id = positive_id(admission_id, "admission_id")
    reason = (payload.reason or "").strip()
    if not reason:
        raise ValidationError("reason is required")

    adm = db.get(IpdAdmission, admission_id)
    if not adm:
        raise NotFound("Admission", admission_id)
    if adm.status != admissions.ADMITTED:
        raise PreconditionFailed(f"Admission is {adm.status}; transfer not allowed")

    scheduled_at = parse_dt_to_utc_naive(payload.scheduled_at, "scheduled_at")
    minutes = payload.reserve_minutes or settings.DEFAULT_RESERVE_MINUTES
    to_bed_id = positive_id(payload.to_bed_id, "to_bed_id") if payload.to_bed_id else None
    if to_bed_id and to_bed_id == adm.current_bed_id:
        raise ValidationError("Target bed must be different from current bed")

    now = now_utc_naive()
    with atomic(db):
        if to_bed_id:
            bed_state.load_bed(db, to_bed_id)

        cur_asg = admissions._active_assignment(db, admission_id)
        t = IpdTransfer(
            admission_id=admission_id,
            from_bed_id=adm.current_bed_id or (cur_asg.bed_id if cur_asg else None),
            from_assignment_id=cur_asg.id if cur_asg else None,
            to_bed_id=None,
            transfer_type=payload.transfer_type,
            priority=payload.priority,
            status=REQUESTED,
            reason=reason,
            request_note=payload.request_note or "",
            reserve_minutes=minutes,
            scheduled_at=scheduled_at,
            requested_by=_uid(user),
            requested_at=now,
        )
        db.add(t)
        db.flush()
        _event(db, t, "request", None, REQUESTED, user, note=reason)

        # reserve target bed if selected
        if to_bed_id:
            until = _reservation_end(now, scheduled_at, minutes)
            try:
                bed_state.reserve(db, to_bed_id, until=until, transfer_id=t.id, now=now)
            except BedUnavailableError as exc:
                logger.info("transfer %s: target bed %s not reserved (%s)", t.id,
                            to_bed_id, exc.message)
                _event(db, t, "target_unavailable", REQUESTED, REQUESTED, user,
                       bed_id=to_bed_id, note=exc.message)
            else:
                t.to_bed_id = to_bed_id
                t.reserved_until = until

    db.refresh(t)
    return t


# ---------------------------------------------------------------------
# Approve / reject
# ---------------------------------------------------------------------
def approve_transfer(db: Session, user, transfer_id: int,
                     payload: TransferApproveIn) -> IpdTransfer:
    caps.require(user, caps.TRANSFER_APPROVE)
    t = _get_transfer(db, transfer_id)

    if t.status != REQUESTED:
        raise PreconditionFailed(f"Cannot approve/reject when status is {t.status}")
    rejected_reason = (payload.rejected_reason or "").strip()
    if not payload.approve and not rejected_reason:
        raise ValidationError("rejected_reason is required to reject")

    target = APPROVED if payload.approve else REJECTED
    now = now_utc_naive()
    with atomic(db):
        if not _advance(db, t, (REQUESTED, ), target,
                        approved_by=_uid(user),
                        approved_at=now,
                        approval_note=payload.approval_note or "",
                        rejected_reason="" if payload.approve else rejected_reason):
            raise PreconditionFailed(f"Cannot approve/reject when status is {t.status}")

        if target == REJECTED and t.to_bed_id:
            bed_state.release_reservation(db, t.to_bed_id, transfer_id=t.id)
        _event(db, t, "approve" if payload.approve else "reject", REQUESTED, target,
               user, bed_id=t.to_bed_id,
               note=payload.approval_note if payload.approve else rejected_reason)

    db.refresh(t)
    return t


# ---------------------------------------------------------------------
# Assign target bed
# ---------------------------------------------------------------------
def assign_transfer_bed(db: Session, user, transfer_id: int,
                        payload: TransferAssignBedIn) -> IpdTransfer:
    """
    (Re)point an approved transfer at ``to_bed_id`` and reserve it.
    Giving ``scheduled_at`` moves the transfer to scheduled. A bed someone
    else holds fails with BedUnavailableError and leaves the transfer as it was.
    """
    caps.require(user, caps.TRANSFER_APPROVE)
    t = _get_transfer(db, transfer_id)
    if t.status not in READY_STATUSES:
        raise PreconditionFailed(f"Cannot assign bed when status is {t.status}")

    to_bed_id = positive_id(payload.to_bed_id, "to_bed_id")
    adm = db.get(IpdAdmission, t.admission_id)
    if adm.status != admissions.ADMITTED:
        raise PreconditionFailed(f"Admission is {adm.status}; transfer not allowed")
    if to_bed_id == adm.current_bed_id:
        raise ValidationError("Target bed must be different from current bed")

    scheduled_at = parse_dt_to_utc_naive(payload.scheduled_at, "scheduled_at") or t.scheduled_at
    minutes = (payload.reserve_minutes or t.reserve_minutes
               or settings.DEFAULT_RESERVE_MINUTES)
    status_before = t.status
    target = SCHEDULED if scheduled_at else status_before
    prev_bed_id = t.to_bed_id
    now = now_utc_naive()
    until = _reservation_end(now, scheduled_at, minutes)

    with atomic(db):
        bed_state.load_bed(db, to_bed_id)
        if not _advance(db, t, READY_STATUSES, target,
                        to_bed_id=to_bed_id,
                        scheduled_at=scheduled_at,
                        reserve_minutes=minutes,
                        reserved_until=until):
            raise PreconditionFailed(f"Cannot assign bed when status is {t.status}")

        # release old reservation (also when re-assigning the same bed)
        if prev_bed_id:
            bed_state.release_reservation(db, prev_bed_id, transfer_id=t.id)

        bed_state.reserve(db, to_bed_id, until=until, transfer_id=t.id, now=now)
        _event(db, t, "assign", status_before, target, user, bed_id=to_bed_id)

    db.refresh(t)
    logger.info("transfer %s: bed %s reserved until %s", t.id, to_bed_id, until)
    return t


# ---------------------------------------------------------------------
# Complete
# ---------------------------------------------------------------------
def complete_transfer(db: Session, user, transfer_id: int,
                      payload: TransferCompleteIn) -> IpdTransfer:
    caps.require(user, caps.TRANSFER_COMPLETE)
    t = _get_transfer(db, transfer_id)
    if t.status not in READY_STATUSES:
        raise PreconditionFailed(f"Cannot complete when status is {t.status}")
    if not t.to_bed_id:
        raise PreconditionFailed("Assign target bed first")

    now = now_utc_naive()
    vacated_at = parse_dt_to_utc_naive(payload.vacated_at, "vacated_at") or now
    occupied_at = parse_dt_to_utc_naive(payload.occupied_at, "occupied_at") or vacated_at
    if occupied_at < vacated_at:
        raise ValidationError("occupied_at must not be before vacated_at")

    handover_json = ""
    if payload.handover is not None:
        handover_json = json.dumps(payload.handover, ensure_ascii=False, default=str)

    status_before = t.status
    with atomic(db):
        if not _advance(db, t, READY_STATUSES, COMPLETED,
                        vacated_at=vacated_at,
                        occupied_at=occupied_at,
                        completed_by=_uid(user),
                        completed_at=now,
                        reserved_until=None,
                        handover_json=handover_json):
            raise PreconditionFailed(f"Cannot complete when status is {t.status}")

        adm = db.get(IpdAdmission, t.admission_id)
        admissions.commit_transfer(db, adm, t, vacated_at=vacated_at,
                                   occupied_at=occupied_at, now=now)
        _event(db, t, "complete", status_before, COMPLETED, user, bed_id=t.to_bed_id)

    db.refresh(t)
    logger.info("transfer %s completed: admission %s now in bed %s", t.id,
                t.admission_id, t.to_bed_id)
    return t


# ---------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------
def cancel_transfer(db: Session, user, transfer_id: int, *,
                    reason: Optional[str] = "") -> IpdTransfer:
    """Idempotent: cancelling a cancelled transfer returns it unchanged."""
    caps.require(user, caps.TRANSFER_CANCEL)
    t = _get_transfer(db, transfer_id)
    if t.status == CANCELLED:
        return t
    if t.status not in OPEN_STATUSES:
        raise PreconditionFailed(f"Cannot cancel when status is {t.status}")

    status_before = t.status
    reason = (reason or "").strip()
    with atomic(db):
        moved = _advance(db, t, OPEN_STATUSES, CANCELLED,
                         cancelled_by=_uid(user),
                         cancelled_at=now_utc_naive(),
                         cancel_reason=reason,
                         reserved_until=None)
        if moved:
            if t.to_bed_id:
                bed_state.release_reservation(db, t.to_bed_id, transfer_id=t.id)
            _event(db, t, "cancel", status_before, CANCELLED, user,
                   bed_id=t.to_bed_id, note=reason)

    db.refresh(t)
    if not moved and t.status != CANCELLED:
        raise PreconditionFailed(f"Cannot cancel when status is {t.status}")
    return t
