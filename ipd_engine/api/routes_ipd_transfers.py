# FILE: ipd_engine/api/routes_ipd_transfers.py
from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ipd_engine.api.deps import get_db, current_user as auth_current_user
from ipd_engine.models.ipd import IpdBed, IpdTransfer
from ipd_engine.models.access import User
from ipd_engine.schemas.ipd import (
    TransferApproveIn,
    TransferAssignBedIn,
    TransferCancelIn,
    TransferCompleteIn,
    TransferRequestIn,
)
from ipd_engine.services import bed_state, transfers
from ipd_engine.utils.resp import ok
from ipd_engine.utils.timezone import iso_utc_z

logger = logging.getLogger(__name__)

router = APIRouter(tags=["IPD Transfers"])


def _bed_loc(bed: Optional[IpdBed]) -> Optional[dict]:
    if not bed:
        return None
    room = bed.room
    ward = room.ward if room else None
    return {
        "bed_id": bed.id,
        "bed_code": bed.code,
        "room_id": room.id if room else None,
        "room_number": room.number if room else None,
        "ward_id": ward.id if ward else None,
        "ward_name": ward.name if ward else None,
        "room_type": room.type if room else None,
        "bed_state": bed_state.effective_state(bed),
        "reserved_until": iso_utc_z(bed.reserved_until),
    }


def _transfer_dict(t: IpdTransfer) -> dict:
    handover = None
    if t.handover_json:
        try:
            handover = json.loads(t.handover_json)
        except ValueError:
            logger.warning("transfer %s: unreadable handover json", t.id)

    return {
        "id": t.id,
        "admission_id": t.admission_id,
        "status": t.status,
        "transfer_type": t.transfer_type,
        "priority": t.priority,
        "reason": t.reason or "",
        "request_note": t.request_note or "",
        "from_bed_id": t.from_bed_id,
        "to_bed_id": t.to_bed_id,
        "reserve_minutes": t.reserve_minutes,
        "scheduled_at": iso_utc_z(t.scheduled_at),
        "reserved_until": iso_utc_z(t.reserved_until),
        "requested_by": t.requested_by,
        "requested_at": iso_utc_z(t.requested_at),
        "approved_by": t.approved_by,
        "approved_at": iso_utc_z(t.approved_at),
        "approval_note": t.approval_note or "",
        "rejected_reason": t.rejected_reason or "",
        "cancelled_by": t.cancelled_by,
        "cancelled_at": iso_utc_z(t.cancelled_at),
        "cancel_reason": t.cancel_reason or "",
        "vacated_at": iso_utc_z(t.vacated_at),
        "occupied_at": iso_utc_z(t.occupied_at),
        "completed_by": t.completed_by,
        "completed_at": iso_utc_z(t.completed_at),
        "from_assignment_id": t.from_assignment_id,
        "to_assignment_id": t.to_assignment_id,
        "from_location": _bed_loc(t.from_bed),
        "to_location": _bed_loc(t.to_bed),
        "handover": handover,
        "events": [
            {
                "action": e.action,
                "from_status": e.from_status,
                "to_status": e.to_status,
                "bed_id": e.bed_id,
                "actor_id": e.actor_id,
                "at": iso_utc_z(e.at),
                "note": e.note or "",
            }
            for e in t.events
        ],
    }


# -------------------------
# Endpoints
# -------------------------
@router.get("/admissions/{admission_id}/transfers")
def list_transfers(
    admission_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    rows = transfers.list_transfers(db, user, admission_id)
    return ok({"total": len(rows), "items": [_transfer_dict(r) for r in rows]})


@router.post("/admissions/{admission_id}/transfers")
def request_transfer(
    admission_id: int,
    payload: TransferRequestIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    t = transfers.request_transfer(db, user, admission_id, payload)
    return ok(_transfer_dict(t), 201)


@router.get("/transfers/{transfer_id}")
def get_transfer(
    transfer_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(_transfer_dict(transfers.get_transfer(db, user, transfer_id)))


@router.post("/transfers/{transfer_id}/approve")
def approve_or_reject_transfer(
    transfer_id: int,
    payload: TransferApproveIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(_transfer_dict(transfers.approve_transfer(db, user, transfer_id, payload)))


@router.post("/transfers/{transfer_id}/assign")
def assign_target_bed(
    transfer_id: int,
    payload: TransferAssignBedIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(_transfer_dict(transfers.assign_transfer_bed(db, user, transfer_id, payload)))


@router.post("/transfers/{transfer_id}/complete")
def complete_transfer(
    transfer_id: int,
    payload: Optional[TransferCompleteIn] = None,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    t = transfers.complete_transfer(db, user, transfer_id, payload or TransferCompleteIn())
    return ok(_transfer_dict(t))


@router.post("/transfers/{transfer_id}/cancel")
def cancel_transfer(
    transfer_id: int,
    payload: Optional[TransferCancelIn] = None,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    payload = payload or TransferCancelIn()
    t = transfers.cancel_transfer(db, user, transfer_id, reason=payload.reason)
    return ok(_transfer_dict(t))
