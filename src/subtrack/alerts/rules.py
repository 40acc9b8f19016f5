# src/subtrack/alerts/rules.py
from __future__ import annotations
import os
from dataclasses import dataclass

@dataclass(slots=True)
class AlertRules:
    """
    Policy parameters shared by all evaluators.
    - renewal_window_days: upcoming billing dates within this many days raise a renewal alert
    - grace_days:          overdue billing dates stay alert-worthy this long
    - urgent_days:         renewals this close (or past due) are flagged "Urgent:" and toasted
    - spending_threshold_pct: |month-over-snapshot change| must exceed this to alert
    """
    renewal_window_days: int = 7
    grace_days: int = 7
    urgent_days: int = 3
    new_subscription_renewal_days: int = 7
    spending_threshold_pct: float = 15.0
    spending_bucket_seconds: int = 60   # sub-minute suppression for spending alerts
    currency_symbol: str = "₹"

    def __post_init__(self):
        if self.renewal_window_days < 0 or self.grace_days < 0:
            raise ValueError("renewal_window_days and grace_days must be >= 0")
        if self.spending_bucket_seconds <= 0:
            raise ValueError("spending_bucket_seconds must be >= 1")


def rules_from_env() -> AlertRules:
    return AlertRules(
        renewal_window_days=int(os.getenv("RENEWAL_WINDOW_DAYS", "7")),
        grace_days=int(os.getenv("RENEWAL_GRACE_DAYS", "7")),
        urgent_days=int(os.getenv("RENEWAL_URGENT_DAYS", "3")),
        spending_threshold_pct=float(os.getenv("SPENDING_THRESHOLD_PCT", "15")),
        currency_symbol=os.getenv("CURRENCY_SYMBOL", "₹"),
    )
