# FILE: ipd_engine/services/inventory.py
"""
Inventory registry: wards, rooms, beds and the bed-rate table.

Rows referenced by admission / transfer / occupancy history are never hard
deleted; deactivate them with ``is_active=False`` instead.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ipd_engine.core.errors import ConflictError, NotFound, ValidationError, positive_id
from ipd_engine.db.session import atomic
from ipd_engine.models.ipd import (
    IpdAdmission,
    IpdBed,
    IpdBedAssignment,
    IpdBedRate,
    IpdRoom,
    IpdTransfer,
    IpdWard,
)
from ipd_engine.schemas.ipd import (
    BedIn,
    BedRateIn,
    BedRateUpdateIn,
    BedUpdateIn,
    RoomIn,
    RoomUpdateIn,
    WardIn,
    WardUpdateIn,
)
from ipd_engine.services import bed_state, capabilities as caps
from ipd_engine.services.audit_logger import log_audit, snapshot
from ipd_engine.services.room_type import normalize_room_type
from ipd_engine.utils.timezone import now_utc_naive, parse_dt_to_utc_naive

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------
def _uid(user) -> Optional[int]:
    return getattr(user, "id", None)


def _flush_unique(db: Session, what: str) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        raise ConflictError(f"{what} already exists") from exc


def _get(db: Session, model, pk: int, label: str):
    obj = db.get(model, positive_id(pk, f"{label.lower()}_id"))
    if not obj:
        raise NotFound(label, pk)
    return obj


def _beds_referenced(db: Session, bed_ids: Sequence[int]) -> bool:
    if not bed_ids:
        return False
    if db.query(IpdAdmission.id).filter(
            IpdAdmission.current_bed_id.in_(bed_ids)).first():
        return True
    if db.query(IpdTransfer.id).filter(
            or_(IpdTransfer.from_bed_id.in_(bed_ids),
                IpdTransfer.to_bed_id.in_(bed_ids))).first():
        return True
    if db.query(IpdBedAssignment.id).filter(
            IpdBedAssignment.bed_id.in_(bed_ids)).first():
        return True
    return False


def _ensure_deletable(db: Session, beds: Sequence[IpdBed], label: str) -> None:
    ids = [b.id for b in beds]
    if _beds_referenced(db, ids):
        raise ConflictError(
            f"{label} is referenced by admission or transfer history; deactivate it instead",
            context={"bed_ids": ids},
        )
    held = [b.id for b in beds if bed_state.effective_state(b) != bed_state.VACANT
            and b.state != bed_state.PREOCCUPIED]
    if held:
        raise ConflictError(f"{label} has beds in use", context={"bed_ids": held})


# ---------------------------------------------------------------------
# WARDS
# ---------------------------------------------------------------------
def list_wards(db: Session, user, *, include_inactive: bool = False) -> List[IpdWard]:
    caps.require(user, caps.VIEW)
    q = db.query(IpdWard)
    if not include_inactive:
        q = q.filter(IpdWard.is_active.is_(True))
    return q.order_by(IpdWard.name.asc()).all()


def create_ward(db: Session, user, payload: WardIn) -> IpdWard:
    caps.require(user, caps.MANAGE_INVENTORY)
    with atomic(db):
        w = IpdWard(
            name=payload.name.strip(),
            code=payload.code.strip(),
            floor=payload.floor or "",
        )
        db.add(w)
        _flush_unique(db, "Ward name/code")
        log_audit(db, user_id=_uid(user), action="CREATE", table_name="ipd_wards",
                  record_id=w.id, new_values=snapshot(w))
    db.refresh(w)
    return w


def update_ward(db: Session, user, ward_id: int, payload: WardUpdateIn) -> IpdWard:
    caps.require(user, caps.MANAGE_INVENTORY)
    w = _get(db, IpdWard, ward_id, "Ward")
    with atomic(db):
        old = snapshot(w)
        data = payload.model_dump(exclude_unset=True)
        for k, v in data.items():
            setattr(w, k, v.strip() if isinstance(v, str) else v)
        _flush_unique(db, "Ward name/code")
        log_audit(db, user_id=_uid(user), action="UPDATE", table_name="ipd_wards",
                  record_id=w.id, old_values=old, new_values=snapshot(w))
    db.refresh(w)
    return w


def delete_ward(db: Session, user, ward_id: int) -> None:
    caps.require(user, caps.MANAGE_INVENTORY)
    w = _get(db, IpdWard, ward_id, "Ward")
    with atomic(db):
        beds = [b for r in w.rooms for b in r.beds]
        _ensure_deletable(db, beds, "Ward")
        log_audit(db, user_id=_uid(user), action="DELETE", table_name="ipd_wards",
                  record_id=w.id, old_values=snapshot(w))
        db.delete(w)
    logger.info("ward %s deleted by user %s", ward_id, _uid(user))


# ---------------------------------------------------------------------
# ROOMS
# ---------------------------------------------------------------------
def list_rooms(db: Session, user, *, ward_id: Optional[int] = None,
               include_inactive: bool = False) -> List[IpdRoom]:
    caps.require(user, caps.VIEW)
    q = db.query(IpdRoom)
    if not include_inactive:
        q = q.filter(IpdRoom.is_active.is_(True))
    if ward_id:
        q = q.filter(IpdRoom.ward_id == ward_id)
    return q.order_by(IpdRoom.number.asc()).all()


def create_room(db: Session, user, payload: RoomIn) -> IpdRoom:
    caps.require(user, caps.MANAGE_INVENTORY)
    _get(db, IpdWard, payload.ward_id, "Ward")
    with atomic(db):
        r = IpdRoom(
            ward_id=payload.ward_id,
            number=payload.number.strip(),
            type=normalize_room_type(payload.type),
        )
        db.add(r)
        _flush_unique(db, "Room number in this ward")
        log_audit(db, user_id=_uid(user), action="CREATE", table_name="ipd_rooms",
                  record_id=r.id, new_values=snapshot(r))
    db.refresh(r)
    return r


def update_room(db: Session, user, room_id: int, payload: RoomUpdateIn) -> IpdRoom:
    caps.require(user, caps.MANAGE_INVENTORY)
    r = _get(db, IpdRoom, room_id, "Room")
    data = payload.model_dump(exclude_unset=True)
    if data.get("ward_id"):
        _get(db, IpdWard, data["ward_id"], "Ward")
    with atomic(db):
        old = snapshot(r)
        for k, v in data.items():
            if k == "type":
                v = normalize_room_type(v)
            elif isinstance(v, str):
                v = v.strip()
            setattr(r, k, v)
        _flush_unique(db, "Room number in this ward")
        log_audit(db, user_id=_uid(user), action="UPDATE", table_name="ipd_rooms",
                  record_id=r.id, old_values=old, new_values=snapshot(r))
    db.refresh(r)
    return r


def delete_room(db: Session, user, room_id: int) -> None:
    caps.require(user, caps.MANAGE_INVENTORY)
    r = _get(db, IpdRoom, room_id, "Room")
    with atomic(db):
        _ensure_deletable(db, list(r.beds), "Room")
        log_audit(db, user_id=_uid(user), action="DELETE", table_name="ipd_rooms",
                  record_id=r.id, old_values=snapshot(r))
        db.delete(r)


# ---------------------------------------------------------------------
# BEDS
# ---------------------------------------------------------------------
def list_beds(db: Session, user, *, room_id: Optional[int] = None,
              ward_id: Optional[int] = None,
              include_inactive: bool = False) -> List[IpdBed]:
    caps.require(user, caps.VIEW)
    q = db.query(IpdBed).join(IpdRoom, IpdRoom.id == IpdBed.room_id)
    if not include_inactive:
        q = q.filter(IpdBed.is_active.is_(True))
    if ward_id:
        q = q.filter(IpdRoom.ward_id == ward_id)
    if room_id:
        q = q.filter(IpdBed.room_id == room_id)
    return q.order_by(IpdBed.code.asc()).all()


def get_bed(db: Session, user, bed_id: int) -> IpdBed:
    caps.require(user, caps.VIEW)
    return _get(db, IpdBed, bed_id, "Bed")


def create_bed(db: Session, user, payload: BedIn) -> IpdBed:
    caps.require(user, caps.MANAGE_INVENTORY)
    _get(db, IpdRoom, payload.room_id, "Room")
    with atomic(db):
        b = IpdBed(
            room_id=payload.room_id,
            code=payload.code.strip(),
            state=bed_state.VACANT,
            note=payload.note or "",
            version=0,
        )
        db.add(b)
        _flush_unique(db, "Bed code")
        log_audit(db, user_id=_uid(user), action="CREATE", table_name="ipd_beds",
                  record_id=b.id, new_values=snapshot(b))
    db.refresh(b)
    return b


def update_bed(db: Session, user, bed_id: int, payload: BedUpdateIn) -> IpdBed:
    """Static attributes only; state changes go through ``set_bed_state``."""
    caps.require(user, caps.MANAGE_INVENTORY)
    _get(db, IpdBed, bed_id, "Bed")
    data = payload.model_dump(exclude_unset=True)
    if data.get("room_id"):
        _get(db, IpdRoom, data["room_id"], "Room")
    with atomic(db):
        b = bed_state.load_bed(db, bed_id)
        if data.get("is_active") is False:
            seen = b.version
            if bed_state.effective_state(b) in bed_state.CLAIMING:
                raise ConflictError("Bed is in use; it cannot be deactivated",
                                    context={"bed_id": b.id, "state": b.state})
            # a claim landing after the check bumps the version first
            bumped = db.execute(
                update(IpdBed).where(IpdBed.id == b.id, IpdBed.version == seen)
                .values(version=IpdBed.version + 1)
                .execution_options(synchronize_session=False))
            if bumped.rowcount != 1:
                raise ConflictError("Bed changed while it was being deactivated",
                                    context={"bed_id": b.id})
        old = snapshot(b)
        for k, v in data.items():
            setattr(b, k, v.strip() if isinstance(v, str) else v)
        _flush_unique(db, "Bed code")
        log_audit(db, user_id=_uid(user), action="UPDATE", table_name="ipd_beds",
                  record_id=b.id, old_values=old, new_values=snapshot(b))
    db.refresh(b)
    return b


def delete_bed(db: Session, user, bed_id: int) -> None:
    caps.require(user, caps.MANAGE_INVENTORY)
    b = _get(db, IpdBed, bed_id, "Bed")
    with atomic(db):
        _ensure_deletable(db, [b], "Bed")
        log_audit(db, user_id=_uid(user), action="DELETE", table_name="ipd_beds",
                  record_id=b.id, old_values=snapshot(b))
        db.delete(b)


def set_bed_state(
    db: Session,
    user,
    bed_id: int,
    *,
    state: str,
    reserved_until: Any = None,
    note: Optional[str] = None,
) -> IpdBed:
    """
    Manual override from the bed board (cleaning, maintenance hold, etc.).
    'occupied' is blocked; use admission/transfer to occupy.
    """
    caps.require(user, caps.MANAGE_INVENTORY)
    bed_id = positive_id(bed_id, "bed_id")
    until = parse_dt_to_utc_naive(reserved_until, "reserved_until")
    with atomic(db):
        before = snapshot(bed_state.load_bed(db, bed_id))
        b = bed_state.set_manual_state(db, bed_id, state=state,
                                       reserved_until=until, note=note)
        log_audit(db, user_id=_uid(user), action="STATE", table_name="ipd_beds",
                  record_id=b.id, old_values=before, new_values=snapshot(b))
    db.refresh(b)
    return b


# ---------------------------------------------------------------------
# BED RATES
# ---------------------------------------------------------------------
def list_bed_rates(db: Session, user, *, room_type: Optional[str] = None) -> List[IpdBedRate]:
    caps.require(user, caps.VIEW)
    q = db.query(IpdBedRate).filter(IpdBedRate.is_active.is_(True))
    if room_type:
        q = q.filter(IpdBedRate.room_type == normalize_room_type(room_type))
    return q.order_by(IpdBedRate.room_type.asc(),
                      IpdBedRate.effective_from.desc()).all()


def create_bed_rate(db: Session, user, payload: BedRateIn) -> IpdBedRate:
    caps.require(user, caps.MANAGE_INVENTORY)
    with atomic(db):
        r = IpdBedRate(
            room_type=normalize_room_type(payload.room_type),
            daily_rate=payload.daily_rate,
            effective_from=payload.effective_from,
            effective_to=payload.effective_to,
            is_active=True,
            created_at=now_utc_naive(),
        )
        db.add(r)
        db.flush()
        log_audit(db, user_id=_uid(user), action="CREATE", table_name="ipd_bed_rates",
                  record_id=r.id, new_values=snapshot(r))
    db.refresh(r)
    return r


def update_bed_rate(db: Session, user, rate_id: int, payload: BedRateUpdateIn) -> IpdBedRate:
    caps.require(user, caps.MANAGE_INVENTORY)
    r = _get(db, IpdBedRate, rate_id, "Bed rate")
    data = payload.model_dump(exclude_unset=True)
    eff_from = data.get("effective_from", r.effective_from)
    eff_to = data.get("effective_to", r.effective_to)
    if eff_to is not None and eff_to < eff_from:
        raise ValidationError("effective_to must be >= effective_from")
    with atomic(db):
        old = snapshot(r)
        for k, v in data.items():
            setattr(r, k, v)
        log_audit(db, user_id=_uid(user), action="UPDATE", table_name="ipd_bed_rates",
                  record_id=r.id, old_values=old, new_values=snapshot(r))
    db.refresh(r)
    return r


def delete_bed_rate(db: Session, user, rate_id: int) -> None:
    caps.require(user, caps.MANAGE_INVENTORY)
    r = _get(db, IpdBedRate, rate_id, "Bed rate")
    with atomic(db):
        log_audit(db, user_id=_uid(user), action="DELETE", table_name="ipd_bed_rates",
                  record_id=r.id, old_values=snapshot(r))
        db.delete(r)


def resolve_bed_rate(db: Session, user, *, room_type: str, on_date: date) -> Optional[IpdBedRate]:
    caps.require(user, caps.VIEW)
    from ipd_engine.services.bed_charges import resolve_daily_rate
    return resolve_daily_rate(db, room_type, on_date)


# ---------------------------------------------------------------------
# QUICK SNAPSHOT / TREE
# ---------------------------------------------------------------------
def bedboard_snapshot(db: Session, user, *, ward_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Lightweight board with enriched labels for UI cards.
    Counts use the effective state (lapsed reservations count as vacant).
    """
    caps.require(user, caps.VIEW)
    now = now_utc_naive()

    q = (
        db.query(IpdBed)
        .join(IpdRoom, IpdRoom.id == IpdBed.room_id)
        .join(IpdWard, IpdWard.id == IpdRoom.ward_id)
        .filter(IpdBed.is_active.is_(True))
    )
    if ward_id:
        q = q.filter(IpdWard.id == ward_id)

    rows = q.add_columns(IpdRoom.number, IpdRoom.type, IpdWard.name).order_by(IpdBed.code.asc()).all()
    counts: Dict[str, int] = {"vacant": 0, "occupied": 0, "reserved": 0, "preoccupied": 0}

    beds: List[Dict[str, Any]] = []
    for b, room_number, room_type, ward_name in rows:
        st = bed_state.effective_state(b, now)
        counts[st] = counts.get(st, 0) + 1
        beds.append(
            {
                "id": b.id,
                "code": b.code,
                "state": st,
                "room_id": b.room_id,
                "room_number": room_number,
                "room_type": room_type,
                "ward_name": ward_name,
                "reserved_until": b.reserved_until if st == bed_state.RESERVED else None,
                "note": b.note,
            }
        )

    return {"beds": beds, "counts": counts}


def ward_room_bed_tree(db: Session, user, *, only_active: bool = True) -> Dict[str, Any]:
    """
    Convenience shape for cascading pickers:
    Ward -> Rooms -> Beds (with current state).
    """
    caps.require(user, caps.VIEW)
    now = now_utc_naive()

    wq = db.query(IpdWard)
    rq = db.query(IpdRoom)
    bq = db.query(IpdBed)
    if only_active:
        wq = wq.filter(IpdWard.is_active.is_(True))
        rq = rq.filter(IpdRoom.is_active.is_(True))
        bq = bq.filter(IpdBed.is_active.is_(True))
    wards = wq.order_by(IpdWard.name.asc()).all()

    room_map: Dict[int, List[IpdRoom]] = {}
    bed_map: Dict[int, List[IpdBed]] = {}
    for r in rq.order_by(IpdRoom.number.asc()).all():
        room_map.setdefault(r.ward_id, []).append(r)
    for b in bq.order_by(IpdBed.code.asc()).all():
        bed_map.setdefault(b.room_id, []).append(b)

    tree = []
    for w in wards:
        r_nodes = []
        for r in room_map.get(w.id, []):
            r_nodes.append(
                {
                    "id": r.id,
                    "number": r.number,
                    "type": r.type,
                    "beds": [
                        {
                            "id": b.id,
                            "code": b.code,
                            "state": bed_state.effective_state(b, now),
                            "reserved_until": b.reserved_until,
                            "note": b.note,
                        }
                        for b in bed_map.get(r.id, [])
                    ],
                }
            )
        tree.append(
            {
                "id": w.id,
                "name": w.name,
                "code": w.code,
                "floor": w.floor,
                "rooms": r_nodes,
            }
        )

    return {"wards": tree}
