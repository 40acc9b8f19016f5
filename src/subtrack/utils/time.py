from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Optional

DAY = timedelta(days=1)

# --- clock ---

def local_now() -> datetime:
    """Naive local wall-clock time (dates are compared on the local calendar)."""
    return datetime.now()

def _naive_local(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone().replace(tzinfo=None)

def _as_datetime(v: date | datetime) -> datetime:
    if isinstance(v, datetime):
        return _naive_local(v)
    return datetime(v.year, v.month, v.day)

# --- calendar helpers ---

def start_of_day(v: date | datetime) -> datetime:
    """Local midnight of the given day."""
    return _as_datetime(v).replace(hour=0, minute=0, second=0, microsecond=0)

def days_between(a: date | datetime, b: date | datetime) -> int:
    """
    Whole calendar days from a to b, both normalized to local midnight.
    Never negative: a same-day or past b yields 0.
    """
    diff = start_of_day(b) - start_of_day(a)
    return max(0, round(diff / DAY))

def iso_date_only(v: date | datetime) -> str:
    """YYYY-MM-DD on the local calendar."""
    return _as_datetime(v).date().isoformat()

def is_before(a: date | datetime, b: date | datetime) -> bool:
    return _as_datetime(a) < _as_datetime(b)

def elapsed_days(since: date | datetime, now: date | datetime) -> float:
    """Fractional days from since to now (may be negative)."""
    return (_as_datetime(now) - _as_datetime(since)) / DAY

def parse_date(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string, date or datetime into a naive local datetime.
    Returns None for anything it cannot interpret.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (datetime, date)):
        return _as_datetime(value)
    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            return _naive_local(datetime.fromisoformat(s))
        except ValueError:
            return None
    return None
