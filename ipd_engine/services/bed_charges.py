from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ipd_engine.core.errors import NotFound, ValidationError, positive_id
from ipd_engine.models.ipd import (
    IpdAdmission,
    IpdBed,
    IpdBedAssignment,
    IpdBedRate,
    IpdRoom,
)
from ipd_engine.schemas.ipd import BedChargeDay, BedChargePreviewOut
from ipd_engine.services import capabilities as caps
from ipd_engine.services.room_type import normalize_room_type
from ipd_engine.utils.timezone import local_day_bounds, to_local, today_local


def _d(x) -> Decimal:
    return Decimal(str(x if x is not None else 0))


def resolve_daily_rate(db: Session, room_type: str,
                       for_date: date) -> Optional[IpdBedRate]:
    """
    Active rate row for ``room_type`` covering ``for_date`` (bounds inclusive).
    Overlapping rows: the most recently created one wins.
    """
    rt = normalize_room_type(room_type)
    return (db.query(IpdBedRate).filter(IpdBedRate.is_active.is_(True)).filter(
        IpdBedRate.room_type == rt).filter(
            IpdBedRate.effective_from <= for_date).filter(
                (IpdBedRate.effective_to.is_(None))
                | (IpdBedRate.effective_to >= for_date)).order_by(
                    IpdBedRate.created_at.desc(),
                    IpdBedRate.id.desc()).first())


@dataclass
class DayCharge:
    day: date
    assignment_id: int
    bed_id: Optional[int]
    bed_code: Optional[str]
    room_type: str
    rate: Decimal
    missing_rate: bool


def compute_daily_charges(
    db: Session,
    admission_id: int,
    from_date: date,
    to_date: date,
) -> List[DayCharge]:
    """
    One row per hospital-local day: the assignment active at the end of the
    day (latest started overlap) gives the bed, its room type the rate.
    Days with no assignment produce no row.
    """
    assigns = (db.query(IpdBedAssignment).filter(
        IpdBedAssignment.admission_id == admission_id).order_by(
            IpdBedAssignment.from_ts.asc(), IpdBedAssignment.id.asc()).all())

    beds: Dict[int, Tuple[Optional[IpdBed], str]] = {}

    def _bed(bed_id: Optional[int]) -> Tuple[Optional[IpdBed], str]:
        if bed_id not in beds:
            bed = db.get(IpdBed, bed_id) if bed_id else None
            room = db.get(IpdRoom, bed.room_id) if bed and bed.room_id else None
            beds[bed_id] = (bed, normalize_room_type(getattr(room, "type", None)))
        return beds[bed_id]

    out: List[DayCharge] = []
    cursor = from_date
    while cursor <= to_date:
        day_start, day_end = local_day_bounds(cursor)

        active: Optional[IpdBedAssignment] = None
        for a in assigns:
            a_start = to_local(a.from_ts)
            if not a_start:
                continue
            a_end = to_local(a.to_ts)
            if a_start <= day_end and (a_end is None or a_end >= day_start):
                active = a  # keep last overlap => latest started

        if active:
            bed, room_type = _bed(active.bed_id)
            rate = resolve_daily_rate(db, room_type, cursor)
            out.append(
                DayCharge(
                    day=cursor,
                    assignment_id=int(active.id),
                    bed_id=int(bed.id) if bed else None,
                    bed_code=bed.code if bed else None,
                    room_type=room_type,
                    rate=_d(rate.daily_rate) if rate else Decimal("0"),
                    missing_rate=rate is None,
                ))

        cursor += timedelta(days=1)

    return out


def _local_date(dt: Optional[datetime]) -> Optional[date]:
    loc = to_local(dt)
    return loc.date() if loc else None


def preview_bed_charges(
    db: Session,
    user,
    admission_id: int,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
) -> BedChargePreviewOut:
    """
    Read-only bed charge estimate for an admission.

    Defaults: ``from_date`` is the admission day, ``to_date`` the discharge
    (or cancel) day, else today. Missing rates price the day at 0 and are
    counted in ``missing_rate_days``.
    """
    caps.require(user, caps.VIEW)
    admission_id = positive_id(admission_id, "admission_id")
    adm = db.get(IpdAdmission, admission_id)
    if not adm:
        raise NotFound("Admission", admission_id)

    from_date = from_date or _local_date(adm.admitted_at) or today_local()
    to_date = (to_date or _local_date(adm.discharged_at)
               or _local_date(adm.cancelled_at) or today_local())
    if to_date < from_date:
        raise ValidationError("to_date must be >= from_date")

    rows = compute_daily_charges(db, admission_id, from_date, to_date)
    days = [
        BedChargeDay(date=r.day,
                     bed_id=r.bed_id,
                     bed_code=r.bed_code,
                     room_type=r.room_type,
                     rate=r.rate,
                     missing_rate=r.missing_rate) for r in rows
    ]
    total = sum((r.rate for r in rows), Decimal("0"))
    return BedChargePreviewOut(admission_id=admission_id,
                               from_date=from_date,
                               to_date=to_date,
                               days=days,
                               total_amount=total,
                               missing_rate_days=sum(1 for r in rows if r.missing_rate))
