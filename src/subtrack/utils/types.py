from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from subtrack.utils.time import parse_date

# ---- subscription domain ----

BillingCycle = Literal["weekly", "monthly", "yearly"]
Status = Literal["active", "trial", "inactive"]

BILLABLE_STATUSES: tuple[str, ...] = ("active", "trial")


@dataclass(slots=True)
class Subscription:
    id: str
    name: str
    category: str = "Other"
    price: float = 0.0
    billing_cycle: BillingCycle = "monthly"
    status: Status = "active"
    next_billing_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    start_date: Optional[datetime] = None
    usage_pct: Optional[float] = None  # 0-100

    @property
    def is_billable(self) -> bool:
        return self.status in BILLABLE_STATUSES

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Subscription":
        """
        Build from a persisted record. Unparseable dates become None so the
        alert engine can skip the record instead of failing the whole pass.
        """
        usage = d.get("usage_pct")
        return cls(
            id=str(d.get("id") or ""),
            name=str(d.get("name") or ""),
            category=str(d.get("category") or "Other"),
            price=float(d.get("price") or 0.0),
            billing_cycle=d.get("billing_cycle") or "monthly",
            status=d.get("status") or "active",
            next_billing_date=parse_date(d.get("next_billing_date")),
            created_at=parse_date(d.get("created_at")),
            start_date=parse_date(d.get("start_date")),
            usage_pct=float(usage) if usage is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        def _iso(dt: Optional[datetime]) -> Optional[str]:
            return dt.isoformat() if dt is not None else None

        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "price": self.price,
            "billing_cycle": self.billing_cycle,
            "status": self.status,
            "next_billing_date": _iso(self.next_billing_date),
            "created_at": _iso(self.created_at),
            "start_date": _iso(self.start_date),
            "usage_pct": self.usage_pct,
        }


# ---- alerting domain ----

AlertKind = Literal[
    "info", "warning", "success", "renewal", "spending", "newSubscription", "missedPayment"
]
ActionKind = Literal["none", "edit_subscription", "review_category", "open_budget"]


@dataclass(slots=True, frozen=True)
class AlertAction:
    """
    What the notification surface should do when the user acts on an alert.
    Resolved by the surface; the engine never holds UI references.
    """
    kind: ActionKind = "none"
    subscription_id: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def none(cls) -> "AlertAction":
        return cls()

    @classmethod
    def edit_subscription(cls, subscription_id: str) -> "AlertAction":
        return cls(kind="edit_subscription", subscription_id=subscription_id)

    @classmethod
    def review_category(cls, category: str) -> "AlertAction":
        return cls(kind="review_category", category=category)

    @classmethod
    def open_budget(cls) -> "AlertAction":
        return cls(kind="open_budget")


@dataclass(slots=True)
class Alert:
    id: str
    kind: AlertKind
    title: str
    message: str
    created_at: datetime
    read: bool = False
    action: AlertAction = field(default_factory=AlertAction)
    action_label: Optional[str] = None
    urgent: bool = False


@dataclass(slots=True, frozen=True)
class Toast:
    title: str
    body: str
