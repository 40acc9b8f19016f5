from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import Iterable, Optional

from subtrack.utils.types import Subscription

# average weeks per month; an approximation, not calendar-exact
WEEKS_PER_MONTH = 4.33


def normalize_to_monthly(price: float, billing_cycle: str) -> float:
    """Monthly-equivalent cost of one charge of `price` per `billing_cycle`."""
    if billing_cycle == "monthly":
        return price
    if billing_cycle == "yearly":
        return price / 12
    if billing_cycle == "weekly":
        return price * WEEKS_PER_MONTH
    return 0.0


def monthly_spend(subscriptions: Iterable[Subscription]) -> float:
    """Total monthly-equivalent spend over active and trial subscriptions."""
    return sum(
        normalize_to_monthly(s.price, s.billing_cycle)
        for s in subscriptions
        if s.is_billable
    )


def _clamp_day(year: int, month: int, day: int) -> int:
    return min(day, calendar.monthrange(year, month)[1])


def _add_months(dt: datetime, months: int) -> datetime:
    idx = dt.month - 1 + months
    year, month = dt.year + idx // 12, idx % 12 + 1
    return dt.replace(year=year, month=month, day=_clamp_day(year, month, dt.day))


def next_billing_date(
    current: datetime,
    billing_cycle: str,
    previous: Optional[datetime] = None,
) -> datetime:
    """
    Next charge date one billing cycle after `current`.

    If `previous` is given, its day-of-month is carried onto `current` first so
    a re-activated subscription keeps its usual billing day. Month-end days
    clamp (Jan 31 -> Feb 28/29), and Feb 29 yearly renewals fall back to
    Feb 28 in non-leap years.
    """
    result = current
    if previous is not None:
        result = result.replace(day=_clamp_day(result.year, result.month, previous.day))

    if billing_cycle == "weekly":
        return result + timedelta(days=7)
    if billing_cycle == "monthly":
        return _add_months(result, 1)
    if billing_cycle == "yearly":
        return _add_months(result, 12)
    raise ValueError(f"unknown billing cycle: {billing_cycle!r}")
