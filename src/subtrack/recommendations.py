"""
Cost-saving suggestions derived from the current subscription set.

Three kinds:
  - underutilized: usage below UNDERUSED_PCT
  - duplicate:     more than one subscription in the same category
  - budget:        monthly-equivalent spend above BUDGET_HINT_MONTHLY
Each carries an AlertAction so the surface can route it like an alert.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional

from subtrack.alerts.formatting import money
from subtrack.billing import monthly_spend
from subtrack.utils.types import AlertAction, Subscription

UNDERUSED_PCT = 30.0
BUDGET_HINT_MONTHLY = 50.0

RecommendationKind = Literal["underutilized", "duplicate", "budget"]


@dataclass(slots=True)
class Recommendation:
    id: str
    kind: RecommendationKind
    message: str
    action: AlertAction
    subscription_ids: list[str] = field(default_factory=list)
    category: Optional[str] = None
    monthly_cost: Optional[float] = None


def is_underutilized(sub: Subscription) -> bool:
    return sub.usage_pct is not None and sub.usage_pct < UNDERUSED_PCT


def get_recommendations(
    subscriptions: Iterable[Subscription], currency_symbol: str = "₹"
) -> list[Recommendation]:
    subs = list(subscriptions)
    out: list[Recommendation] = []

    for sub in subs:
        if is_underutilized(sub):
            out.append(Recommendation(
                id=f"rec-{sub.id}",
                kind="underutilized",
                message=(
                    f"Your {sub.name} subscription is only used {sub.usage_pct:.0f}% of the time. "
                    f"Consider downgrading or cancelling."
                ),
                action=AlertAction.edit_subscription(sub.id),
                subscription_ids=[sub.id],
            ))

    by_category: dict[str, list[Subscription]] = defaultdict(list)
    for sub in subs:
        by_category[sub.category].append(sub)
    for category, members in by_category.items():
        if len(members) < 2:
            continue
        names = ", ".join(s.name for s in members)
        out.append(Recommendation(
            id=f"rec-cat-{category}",
            kind="duplicate",
            message=f"You have multiple {category} subscriptions: {names}. Consider consolidating.",
            action=AlertAction.review_category(category),
            subscription_ids=[s.id for s in members],
            category=category,
        ))

    total = monthly_spend(subs)
    if total > BUDGET_HINT_MONTHLY:
        out.append(Recommendation(
            id="rec-budget",
            kind="budget",
            message=(
                f"Your monthly subscription cost is {money(total, currency_symbol)}. "
                f"Consider setting a budget to reduce costs."
            ),
            action=AlertAction.open_budget(),
            monthly_cost=total,
        ))

    return out
