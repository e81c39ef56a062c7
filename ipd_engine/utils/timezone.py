# FILE: ipd_engine/utils/timezone.py
"""
Timestamp rules for the engine.

* DB columns hold naive UTC, truncated to whole seconds.
* Naive client input is hospital local time (``settings.HOSPITAL_TZ``).
* Aware client input is converted to UTC.
* Output is ISO 8601 UTC with a ``Z`` suffix.
"""
from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Any, Optional, Tuple
from zoneinfo import ZoneInfo

from ipd_engine.core.config import settings
from ipd_engine.core.errors import ValidationError

HOSPITAL_TZ = ZoneInfo(settings.HOSPITAL_TZ)


def now_utc_naive() -> datetime:
    """Store UTC as naive datetime in DB."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def today_local() -> date:
    return datetime.now(HOSPITAL_TZ).date()


def parse_dt_to_utc_naive(v: Any, field: str = "datetime") -> Optional[datetime]:
    """
    Accepts:
      - None / ""
      - datetime
      - ISO string: 'YYYY-MM-DDTHH:MM[:SS]' (from datetime-local) => hospital time
      - ISO string with timezone: '...Z' or '+HH:MM' => converted to UTC
    Returns naive UTC datetime at second precision.
    Raises ValidationError on anything unparseable.
    """
    if v is None:
        return None

    if isinstance(v, datetime):
        dt = v
    elif isinstance(v, str):
        s = v.strip()
        if not s:
            return None
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid {field}: expected ISO 8601 datetime")
    else:
        raise ValidationError(f"Invalid {field}: expected ISO 8601 datetime")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=HOSPITAL_TZ)

    return dt.astimezone(timezone.utc).replace(tzinfo=None, microsecond=0)


def iso_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Convert DB datetime (naive UTC) to ISO string with 'Z' suffix,
    so frontend Date() parses correctly as UTC.
    """
    if not dt:
        return None
    if isinstance(dt, str):
        return dt
    aware = dt.replace(tzinfo=timezone.utc)
    s = aware.isoformat(timespec="seconds")
    return s.replace("+00:00", "Z")


def to_local(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC (as stored) -> aware hospital-local."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(HOSPITAL_TZ)


def local_day_bounds(d: date) -> Tuple[datetime, datetime]:
    """Returns hospital-local aware [start, end] for the given date."""
    start = datetime.combine(d, time.min).replace(tzinfo=HOSPITAL_TZ)
    end = datetime.combine(d, time.max).replace(tzinfo=HOSPITAL_TZ)
    return start, end
