from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Iterator, Optional

import structlog

from subtrack.alerts.dedup import alert_id, time_bucket
from subtrack.alerts.formatting import money, plural_days, renewal_phrase
from subtrack.alerts.rules import AlertRules
from subtrack.alerts.state import LedgerPatch, LedgerView
from subtrack.billing import monthly_spend
from subtrack.utils.time import days_between, elapsed_days, is_before, iso_date_only
from subtrack.utils.types import Alert, AlertAction, Subscription, Toast

log = structlog.get_logger("evaluators")


@dataclass(slots=True)
class EvaluationResult:
    new_alerts: list[Alert] = field(default_factory=list)
    patch: LedgerPatch = field(default_factory=LedgerPatch)
    toasts: list[Toast] = field(default_factory=list)

    def emit(self, alert: Alert) -> None:
        self.new_alerts.append(alert)
        self.patch.processed_ids.add(alert.id)


Evaluator = Callable[
    [list[Subscription], LedgerView, datetime, bool, AlertRules], EvaluationResult
]


def renewal_key(sub_id: str, billing_date: datetime) -> str:
    """checked_renewals key for one renewal occurrence."""
    return f"{sub_id}-{iso_date_only(billing_date)}"


def _with_billing_date(
    subscriptions: Iterable[Subscription], evaluator: str
) -> Iterator[tuple[Subscription, datetime]]:
    for sub in subscriptions:
        if sub.next_billing_date is None:
            log.warning("subscription_bad_date", sub_id=sub.id, evaluator=evaluator)
            continue
        yield sub, sub.next_billing_date


# ---------------------------------------------------------------------------
# renewal
# ---------------------------------------------------------------------------

def evaluate_renewals(
    subscriptions: list[Subscription],
    view: LedgerView,
    now: datetime,
    force: bool = False,
    rules: Optional[AlertRules] = None,
) -> EvaluationResult:
    """
    Upcoming (within the renewal window) or recently past-due renewals.

    Id is stable per occurrence: renewal-<sub>-<YYYY-MM-DD>. Once the billing
    date rolls over to the next cycle a new id (and a new alert) appears.
    Toasts fire at most once per occurrence, tracked via checked_renewals.
    """
    rules = rules or AlertRules()
    out = EvaluationResult()

    for sub, nbd in _with_billing_date(subscriptions, "renewal"):
        if not sub.is_billable:
            continue
        days = days_between(now, nbd)
        past_due = is_before(nbd, now)
        if past_due:
            if days_between(nbd, now) > rules.grace_days:
                continue
        elif days > rules.renewal_window_days:
            continue

        aid = alert_id("renewal", sub.id, iso_date_only(nbd))
        if aid in view.dismissed_ids:
            log.debug("renewal_skip_dismissed", alert_id=aid)
            continue
        if not force and aid in view.processed_ids:
            continue

        key = renewal_key(sub.id, nbd)
        already_checked = view.is_checked(key)
        urgent = days <= rules.urgent_days or past_due
        when = renewal_phrase(days, past_due)

        if force or not already_checked:
            out.emit(Alert(
                id=aid,
                kind="renewal",
                title=f"{'Urgent: ' if urgent else ''}{sub.name} renewal reminder",
                message=(
                    f"Your subscription to {sub.name} will renew {when}. "
                    f"The charge will be {money(sub.price, rules.currency_symbol)}."
                ),
                created_at=now,
                action=AlertAction.edit_subscription(sub.id),
                action_label="View Details",
                urgent=urgent,
            ))
            if urgent and not already_checked:
                out.toasts.append(Toast(
                    title=f"{sub.name} renewal reminder",
                    body=f"Your subscription will renew {when}.",
                ))

        out.patch.checked_renewals[key] = True

    return out


# ---------------------------------------------------------------------------
# missed payment
# ---------------------------------------------------------------------------

def evaluate_missed_payments(
    subscriptions: list[Subscription],
    view: LedgerView,
    now: datetime,
    force: bool = False,
    rules: Optional[AlertRules] = None,
) -> EvaluationResult:
    """
    Active subscriptions whose billing date passed less than grace_days ago.
    One id per whole day missed, so the alert escalates once a day.
    """
    rules = rules or AlertRules()
    out = EvaluationResult()

    for sub, nbd in _with_billing_date(subscriptions, "missed_payment"):
        if sub.status != "active" or not is_before(nbd, now):
            continue
        missed = elapsed_days(nbd, now)
        if missed >= rules.grace_days:
            continue

        days_missed = math.floor(missed)
        aid = alert_id("missedPayment", sub.id, days_missed)
        if aid in view.dismissed_ids:
            continue
        if not force and aid in view.processed_ids:
            continue

        out.emit(Alert(
            id=aid,
            kind="missedPayment",
            title="Possible missed payment",
            message=(
                f"Your {sub.name} subscription payment was due {plural_days(days_missed)} ago. "
                f"Please check your payment method."
            ),
            created_at=now,
            action=AlertAction.edit_subscription(sub.id),
            action_label="Review Subscription",
        ))

    return out


# ---------------------------------------------------------------------------
# new subscription
# ---------------------------------------------------------------------------

def evaluate_new_subscriptions(
    subscriptions: list[Subscription],
    view: LedgerView,
    now: datetime,
    force: bool = False,
    rules: Optional[AlertRules] = None,
) -> EvaluationResult:
    """
    Subscriptions absent from the previous snapshot. Fires once per id, ever
    (force does not re-emit). A companion renewal alert is added when the new
    subscription renews soon and the renewal evaluator has not already
    covered that occurrence in this pass.
    """
    rules = rules or AlertRules()
    out = EvaluationResult()
    if not view.has_snapshot:
        # first pass only establishes the baseline
        return out

    known = set(view.subscription_ids)
    for sub in subscriptions:
        if sub.id in known:
            continue
        aid = alert_id("newSubscription", sub.id)
        if aid in view.dismissed_ids or aid in view.processed_ids:
            continue

        log.info("new_subscription_detected", sub_id=sub.id, name=sub.name)
        out.emit(Alert(
            id=aid,
            kind="newSubscription",
            title="New subscription added",
            message=(
                f"You've added a new subscription: {sub.name} "
                f"({money(sub.price, rules.currency_symbol)}/{sub.billing_cycle})."
            ),
            created_at=now,
            action=AlertAction.edit_subscription(sub.id),
            action_label="View Details",
        ))

        nbd = sub.next_billing_date
        if nbd is None:
            log.warning("subscription_bad_date", sub_id=sub.id, evaluator="new_subscription")
            continue
        if is_before(nbd, now) and days_between(nbd, now) > rules.grace_days:
            # stale billing date, nothing upcoming to remind about
            continue
        days = days_between(now, nbd)
        if days > rules.new_subscription_renewal_days:
            continue

        base_id = alert_id("renewal", sub.id, iso_date_only(nbd))
        key = renewal_key(sub.id, nbd)
        if view.is_checked(key) or base_id in view.dismissed_ids:
            continue
        cid = alert_id("renewal", sub.id, iso_date_only(nbd), "new")
        if cid in view.dismissed_ids or cid in view.processed_ids:
            continue

        urgent = days <= rules.urgent_days
        out.emit(Alert(
            id=cid,
            kind="renewal",
            title=f"{'Urgent: ' if urgent else ''}{sub.name} renewal reminder (new subscription)",
            message=(
                f"Your new subscription to {sub.name} will renew in {plural_days(days)}. "
                f"The charge will be {money(sub.price, rules.currency_symbol)}."
            ),
            created_at=now,
            action=AlertAction.edit_subscription(sub.id),
            action_label="View Details",
            urgent=urgent,
        ))
        out.patch.checked_renewals[key] = True
        if urgent:
            out.toasts.append(Toast(
                title=f"{sub.name} renewal reminder",
                body=f"Your new subscription will renew in {plural_days(days)}.",
            ))

    return out


# ---------------------------------------------------------------------------
# spending delta
# ---------------------------------------------------------------------------

def evaluate_spending(
    subscriptions: list[Subscription],
    view: LedgerView,
    now: datetime,
    force: bool = False,
    rules: Optional[AlertRules] = None,
) -> EvaluationResult:
    """
    Point-in-time anomaly: monthly spend moved more than the threshold
    against the previous snapshot. Ids carry a coarse time bucket, so the
    same change is not repeated within one bucket but may recur later.
    """
    rules = rules or AlertRules()
    out = EvaluationResult()

    prior = view.total_monthly_spend
    total = monthly_spend(subscriptions)
    if prior <= 0:
        return out
    if not force and math.isclose(total, prior, rel_tol=1e-9, abs_tol=1e-9):
        return out

    delta = total - prior
    pct = delta / prior * 100.0
    bucket = time_bucket(now, rules.spending_bucket_seconds)
    sym = rules.currency_symbol

    if delta > 0 and pct > rules.spending_threshold_pct:
        aid = alert_id("spending", "increase", bucket)
        if aid in view.processed_ids or aid in view.dismissed_ids:
            return out
        known = set(view.subscription_ids)
        newest = sorted(
            (s for s in subscriptions if s.id not in known),
            key=lambda s: s.price,
            reverse=True,
        )
        action = (
            AlertAction.edit_subscription(newest[0].id) if newest else AlertAction.open_budget()
        )
        out.emit(Alert(
            id=aid,
            kind="spending",
            title="Unusual spending increase detected",
            message=(
                f"Your monthly subscription spending has increased by {pct:.0f}% "
                f"({money(delta, sym)}) compared to your previous total."
            ),
            created_at=now,
            action=action,
            action_label="Review Expenses",
        ))
    elif delta < 0 and abs(pct) > rules.spending_threshold_pct:
        aid = alert_id("spending", "decrease", bucket)
        if aid in view.processed_ids or aid in view.dismissed_ids:
            return out
        out.emit(Alert(
            id=aid,
            kind="info",
            title="Significant spending decrease",
            message=(
                f"Your monthly subscription spending has decreased by {abs(pct):.0f}% "
                f"({money(abs(delta), sym)})."
            ),
            created_at=now,
            action=AlertAction.none(),
        ))

    return out
