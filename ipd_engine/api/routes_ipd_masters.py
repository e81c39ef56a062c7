# FILE: ipd_engine/api/routes_ipd_masters.py
from __future__ import annotations
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ipd_engine.api.deps import get_db, current_user as auth_current_user
from ipd_engine.models.ipd import IpdBed
from ipd_engine.models.access import User
from ipd_engine.schemas.ipd import (
    WardIn,
    WardUpdateIn,
    WardOut,
    RoomIn,
    RoomUpdateIn,
    RoomOut,
    BedIn,
    BedUpdateIn,
    BedOut,
    BedStateIn,
    BedRateIn,
    BedRateUpdateIn,
    BedRateOut,
)
from ipd_engine.services import bed_state, inventory
from ipd_engine.utils.resp import ok
from ipd_engine.utils.timezone import iso_utc_z

router = APIRouter(tags=["IPD Masters"])


def _bed_out(b: IpdBed) -> dict:
    out = BedOut.model_validate(b)
    out.effective_state = bed_state.effective_state(b)
    data = out.model_dump()
    data["reserved_until"] = iso_utc_z(b.reserved_until)
    return data


def _board_row(row: dict) -> dict:
    return {**row, "reserved_until": iso_utc_z(row.get("reserved_until"))}


# ---------------------------------------------------------------------
# WARDS
# ---------------------------------------------------------------------
@router.get("/wards")
def list_wards(
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    rows = inventory.list_wards(db, user, include_inactive=include_inactive)
    return ok([WardOut.model_validate(w) for w in rows])


@router.post("/wards")
def create_ward(
    payload: WardIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    w = inventory.create_ward(db, user, payload)
    return ok(WardOut.model_validate(w), 201)


@router.put("/wards/{ward_id}")
def update_ward(
    ward_id: int,
    payload: WardUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(WardOut.model_validate(inventory.update_ward(db, user, ward_id, payload)))


@router.delete("/wards/{ward_id}")
def delete_ward(
    ward_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    inventory.delete_ward(db, user, ward_id)
    return ok({"id": ward_id, "deleted": True})


# ---------------------------------------------------------------------
# ROOMS
# ---------------------------------------------------------------------
@router.get("/rooms")
def list_rooms(
    ward_id: Optional[int] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    rows = inventory.list_rooms(db, user, ward_id=ward_id,
                                include_inactive=include_inactive)
    return ok([RoomOut.model_validate(r) for r in rows])


@router.post("/rooms")
def create_room(
    payload: RoomIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    r = inventory.create_room(db, user, payload)
    return ok(RoomOut.model_validate(r), 201)


@router.put("/rooms/{room_id}")
def update_room(
    room_id: int,
    payload: RoomUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(RoomOut.model_validate(inventory.update_room(db, user, room_id, payload)))


@router.delete("/rooms/{room_id}")
def delete_room(
    room_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    inventory.delete_room(db, user, room_id)
    return ok({"id": room_id, "deleted": True})


# ---------------------------------------------------------------------
# BEDS
# ---------------------------------------------------------------------
@router.get("/beds")
def list_beds(
    room_id: Optional[int] = None,
    ward_id: Optional[int] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    rows = inventory.list_beds(db, user, room_id=room_id, ward_id=ward_id,
                               include_inactive=include_inactive)
    return ok([_bed_out(b) for b in rows])


@router.post("/beds")
def create_bed(
    payload: BedIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(_bed_out(inventory.create_bed(db, user, payload)), 201)


@router.get("/beds/{bed_id}")
def get_bed(
    bed_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(_bed_out(inventory.get_bed(db, user, bed_id)))


@router.put("/beds/{bed_id}")
def update_bed(
    bed_id: int,
    payload: BedUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(_bed_out(inventory.update_bed(db, user, bed_id, payload)))


@router.delete("/beds/{bed_id}")
def delete_bed(
    bed_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    inventory.delete_bed(db, user, bed_id)
    return ok({"id": bed_id, "deleted": True})


@router.patch("/beds/{bed_id}/state")
def set_bed_state(
    bed_id: int,
    payload: BedStateIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    b = inventory.set_bed_state(db, user, bed_id,
                                state=payload.state,
                                reserved_until=payload.reserved_until,
                                note=payload.note)
    return ok(_bed_out(b))


# ---------------------------------------------------------------------
# QUICK SNAPSHOT / TREE
# ---------------------------------------------------------------------
@router.get("/bedboard")
def bedboard(
    ward_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    board = inventory.bedboard_snapshot(db, user, ward_id=ward_id)
    board["beds"] = [_board_row(b) for b in board["beds"]]
    return ok(board)


@router.get("/tree")
def ward_room_bed_tree(
    only_active: bool = True,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    tree = inventory.ward_room_bed_tree(db, user, only_active=only_active)
    for w in tree["wards"]:
        for r in w["rooms"]:
            r["beds"] = [_board_row(b) for b in r["beds"]]
    return ok(tree)


# ---------------------------------------------------------------------
# BED RATES
# ---------------------------------------------------------------------
@router.get("/bed-rates")
def list_bed_rates(
    room_type: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    rows = inventory.list_bed_rates(db, user, room_type=room_type)
    return ok([BedRateOut.model_validate(r) for r in rows])


@router.get("/bed-rates/resolve")
def resolve_bed_rate(
    room_type: str = Query(...),
    on_date: date = Query(...),
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    r = inventory.resolve_bed_rate(db, user, room_type=room_type, on_date=on_date)
    return ok({
        "room_type": room_type,
        "on_date": on_date,
        "rate": BedRateOut.model_validate(r) if r else None,
    })


@router.post("/bed-rates")
def create_bed_rate(
    payload: BedRateIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(BedRateOut.model_validate(inventory.create_bed_rate(db, user, payload)), 201)


@router.put("/bed-rates/{rate_id}")
def update_bed_rate(
    rate_id: int,
    payload: BedRateUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    return ok(BedRateOut.model_validate(inventory.update_bed_rate(db, user, rate_id, payload)))


@router.delete("/bed-rates/{rate_id}")
def delete_bed_rate(
    rate_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth_current_user),
):
    inventory.delete_bed_rate(db, user, rate_id)
    return ok({"id": rate_id, "deleted": True})
