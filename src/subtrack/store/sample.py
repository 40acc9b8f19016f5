from __future__ import annotations

from datetime import datetime, timedelta

from subtrack.utils.types import Subscription

# (id, name, category, price, cycle, status, due_in_days, started_days_ago, usage)
_SAMPLES = [
    ("1", "Netflix",              "Entertainment", 649.0,  "monthly", "active",   15,  30,  85),
    ("2", "Spotify",              "Music",         119.0,  "monthly", "active",   7,   45,  92),
    ("3", "Amazon Prime",         "Entertainment", 1499.0, "yearly",  "active",   120, 245, 45),
    ("4", "Adobe Creative Cloud", "Productivity",  4899.0, "monthly", "inactive", -5,  180, 10),
    ("5", "Disney+",              "Entertainment", 299.0,  "monthly", "trial",    2,   12,  30),
    ("6", "iCloud",               "Cloud Storage", 75.0,   "monthly", "active",   22,  60,  78),
]

def sample_subscriptions(now: datetime) -> list[Subscription]:
    """Demo data for an empty account, dated relative to now."""
    return [
        Subscription(
            id=sid,
            name=name,
            category=cat,
            price=price,
            billing_cycle=cycle,
            status=status,
            next_billing_date=now + timedelta(days=due),
            start_date=now - timedelta(days=started),
            created_at=now,
            usage_pct=float(usage),
        )
        for sid, name, cat, price, cycle, status, due, started, usage in _SAMPLES
    ]
