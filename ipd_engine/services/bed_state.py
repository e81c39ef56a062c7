# FILE: ipd_engine/services/bed_state.py
"""
Per-bed state machine.

States: vacant / reserved / preoccupied / occupied.

    vacant      -> reserved | preoccupied | occupied
    reserved    -> occupied | vacant
    preoccupied -> vacant
    occupied    -> vacant

Every write is a compare-and-swap: the caller names the state it believes
the bed is in, the row is re-read, and the update only lands if the row
``version`` is still the one that was read. A lost CAS re-reads and
re-validates, up to ``settings.BED_CAS_MAX_RETRIES`` times.

A reservation is Active(until) or Expired, evaluated against the server
clock at write time. An expired reservation counts as vacant for any claim;
``sweep_expired_reservations`` clears them in bulk and is safe to run
alongside live claims.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ipd_engine.core.config import settings
from ipd_engine.core.errors import (
    BedUnavailableError,
    ConflictError,
    NotFound,
    ValidationError,
)
from ipd_engine.models.ipd import IpdBed, BED_STATES
from ipd_engine.utils.timezone import now_utc_naive

logger = logging.getLogger(__name__)

VACANT = "vacant"
RESERVED = "reserved"
PREOCCUPIED = "preoccupied"
OCCUPIED = "occupied"

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    VACANT: frozenset({RESERVED, PREOCCUPIED, OCCUPIED}),
    RESERVED: frozenset({OCCUPIED, VACANT}),
    PREOCCUPIED: frozenset({VACANT}),
    OCCUPIED: frozenset({VACANT}),
}

CLAIMING: FrozenSet[str] = frozenset({RESERVED, OCCUPIED})


@dataclass(frozen=True)
class Reservation:
    until: Optional[datetime]  # None = held until released
    transfer_id: Optional[int]
    expired: bool

    @property
    def active(self) -> bool:
        return not self.expired


def reservation_of(bed: IpdBed,
                   now: Optional[datetime] = None) -> Optional[Reservation]:
    if bed.state != RESERVED:
        return None
    now = now or now_utc_naive()
    until = bed.reserved_until
    return Reservation(
        until=until,
        transfer_id=bed.reserved_by_transfer_id,
        expired=until is not None and until <= now,
    )


def effective_state(bed: IpdBed, now: Optional[datetime] = None) -> str:
    r = reservation_of(bed, now)
    if r is not None and r.expired:
        return VACANT
    return bed.state


def load_bed(db: Session, bed_id: int) -> IpdBed:
    """Fresh read of the bed row (bypasses stale identity-map state)."""
    bed = db.get(IpdBed, bed_id, populate_existing=True)
    if not bed:
        raise NotFound("Bed", bed_id)
    return bed


def compare_and_set(
    db: Session,
    bed_id: int,
    *,
    expected_version: int,
    state: str,
    reserved_until: Optional[datetime] = None,
    transfer_id: Optional[int] = None,
    note: Optional[str] = None,
) -> bool:
    """
    Single conditional UPDATE keyed on (id, version).
    Returns False when another writer got there first.
    """
    values = {
        "state": state,
        "reserved_until": reserved_until,
        "reserved_by_transfer_id": transfer_id,
        "version": IpdBed.version + 1,
    }
    if note is not None:
        values["note"] = note
    res = db.execute(
        update(IpdBed).where(
            IpdBed.id == bed_id,
            IpdBed.version == expected_version,
        ).values(**values).execution_options(synchronize_session=False))
    return res.rowcount == 1


def _retries() -> int:
    return max(1, int(settings.BED_CAS_MAX_RETRIES))


def transition(
    db: Session,
    bed_id: int,
    *,
    expected: str,
    target: str,
    reserved_until: Optional[datetime] = None,
    transfer_id: Optional[int] = None,
    note: Optional[str] = None,
    holder_transfer_id: Optional[int] = None,
    lazy_expiry: bool = True,
    now: Optional[datetime] = None,
) -> IpdBed:
    """
    Move ``bed_id`` from ``expected`` to ``target``.

    Raises BedUnavailableError when the bed is not (or no longer) in
    ``expected``, when a claim targets a disabled bed, or when a
    reservation is held by a different transfer than ``holder_transfer_id``.
    """
    if target not in TRANSITIONS.get(expected, frozenset()):
        raise ConflictError(
            f"Bed cannot move from {expected} to {target}",
            context={"bed_id": bed_id, "from": expected, "to": target},
        )
    now = now or now_utc_naive()

    for attempt in range(_retries()):
        bed = load_bed(db, bed_id)
        current = effective_state(bed, now) if lazy_expiry else bed.state
        if current != expected:
            raise BedUnavailableError(bed.id, current)
        if target in CLAIMING and not bed.is_active:
            raise BedUnavailableError(bed.id, current, "Bed is disabled")
        if (expected == RESERVED and holder_transfer_id is not None
                and bed.reserved_by_transfer_id != holder_transfer_id):
            raise BedUnavailableError(bed.id, current,
                                      "Bed is reserved for another transfer")

        if compare_and_set(
                db,
                bed.id,
                expected_version=bed.version,
                state=target,
                reserved_until=reserved_until if target == RESERVED else None,
                transfer_id=transfer_id if target == RESERVED else None,
                note=note,
        ):
            db.refresh(bed)
            logger.info("bed %s: %s -> %s", bed.id, current, target)
            return bed

        logger.warning("bed %s: CAS lost on attempt %s, re-reading", bed_id,
                       attempt + 1)

    raise BedUnavailableError(bed_id, "contended",
                              "Bed is being updated concurrently, try again")


# ---------------------------------------------------------------------
# Claims / releases used by admissions and transfers
# ---------------------------------------------------------------------
def reserve(
    db: Session,
    bed_id: int,
    *,
    until: Optional[datetime],
    transfer_id: Optional[int] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IpdBed:
    return transition(
        db,
        bed_id,
        expected=VACANT,
        target=RESERVED,
        reserved_until=until,
        transfer_id=transfer_id,
        note=note,
        now=now,
    )


def occupy(
    db: Session,
    bed_id: int,
    *,
    transfer_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> IpdBed:
    """
    Consume the live reservation held by ``transfer_id``, or take a
    vacant (or lapsed-reservation) bed directly.
    """
    now = now or now_utc_naive()
    bed = load_bed(db, bed_id)
    r = reservation_of(bed, now)
    if (r is not None and r.active and transfer_id is not None
            and r.transfer_id == transfer_id):
        return transition(db,
                          bed_id,
                          expected=RESERVED,
                          target=OCCUPIED,
                          holder_transfer_id=transfer_id,
                          now=now)
    return transition(db, bed_id, expected=VACANT, target=OCCUPIED, now=now)


def vacate(db: Session, bed_id: int, *, now: Optional[datetime] = None) -> IpdBed:
    return transition(db, bed_id, expected=OCCUPIED, target=VACANT, now=now)


def release_reservation(
    db: Session,
    bed_id: int,
    *,
    transfer_id: int,
) -> Optional[IpdBed]:
    """
    Drop the reservation ``transfer_id`` holds on ``bed_id``, expired or not.
    Returns None when this transfer no longer holds it (swept, or claimed
    by someone else after lapsing).
    """
    for attempt in range(_retries()):
        bed = load_bed(db, bed_id)
        if bed.state != RESERVED or bed.reserved_by_transfer_id != transfer_id:
            return None
        if compare_and_set(db,
                           bed.id,
                           expected_version=bed.version,
                           state=VACANT):
            db.refresh(bed)
            logger.info("bed %s: reservation of transfer %s released",
                        bed.id, transfer_id)
            return bed
        logger.warning("bed %s: CAS lost on release attempt %s", bed_id,
                       attempt + 1)

    raise BedUnavailableError(bed_id, "contended",
                              "Bed is being updated concurrently, try again")


# ---------------------------------------------------------------------
# Manual overrides (bed board)
# ---------------------------------------------------------------------
def set_manual_state(
    db: Session,
    bed_id: int,
    *,
    state: str,
    reserved_until: Optional[datetime] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IpdBed:
    if state not in BED_STATES:
        raise ValidationError(f"state must be one of {list(BED_STATES)}")
    if state == OCCUPIED:
        raise ValidationError(
            "occupied is set by admission or transfer, not manually")

    now = now or now_utc_naive()
    if state == RESERVED and reserved_until is not None and reserved_until <= now:
        raise ValidationError("reserved_until must be in the future")

    bed = load_bed(db, bed_id)
    current = effective_state(bed, now)
    if current == OCCUPIED:
        raise BedUnavailableError(
            bed.id, current,
            "Bed is occupied; discharge or transfer the patient first")
    r = reservation_of(bed, now)
    if r is not None and r.active and r.transfer_id is not None:
        raise BedUnavailableError(
            bed.id, current,
            f"Bed is reserved by transfer #{r.transfer_id}; cancel or reassign it first"
        )

    if current != state:
        return transition(
            db,
            bed.id,
            expected=current,
            target=state,
            reserved_until=reserved_until,
            note=note,
            now=now,
        )

    # same state: only the note / hold window changes
    for attempt in range(_retries()):
        if compare_and_set(
                db,
                bed.id,
                expected_version=bed.version,
                state=state,
                reserved_until=reserved_until if state == RESERVED else None,
                note=note,
        ):
            db.refresh(bed)
            return bed
        bed = load_bed(db, bed_id)
        if effective_state(bed, now) != state:
            raise BedUnavailableError(bed.id, effective_state(bed, now))

    raise BedUnavailableError(bed_id, "contended",
                              "Bed is being updated concurrently, try again")


# ---------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------
def sweep_expired_reservations(db: Session,
                               now: Optional[datetime] = None) -> int:
    """
    Flip every lapsed reservation back to vacant.
    Idempotent; a bed claimed or extended since the scan is left alone.
    The caller owns the transaction.
    """
    now = now or now_utc_naive()
    ids = [
        bid for (bid, ) in db.query(IpdBed.id).filter(
            IpdBed.state == RESERVED,
            IpdBed.reserved_until.isnot(None),
            IpdBed.reserved_until <= now,
        ).all()
    ]

    released = 0
    for bid in ids:
        bed = load_bed(db, bid)
        r = reservation_of(bed, now)
        if r is None or not r.expired:
            continue
        if compare_and_set(db, bid, expected_version=bed.version, state=VACANT):
            released += 1

    if released:
        logger.info("reservation sweep: %s bed(s) released", released)
    return released
