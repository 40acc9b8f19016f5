from __future__ import annotations

import asyncio
import inspect
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog

from subtrack.alerts.dedup import TTLDeduper
from subtrack.alerts.evaluators import (
    Evaluator,
    evaluate_missed_payments,
    evaluate_new_subscriptions,
    evaluate_renewals,
    evaluate_spending,
)
from subtrack.alerts.rules import AlertRules, rules_from_env
from subtrack.alerts.state import AlertLedger, LedgerPatch
from subtrack.recommendations import Recommendation, get_recommendations
from subtrack.store.subscriptions import ChangeSignal, SubscriptionStore
from subtrack.utils.time import local_now
from subtrack.utils.types import Alert, AlertAction, Subscription, Toast

log = structlog.get_logger("orchestrator")

NotifyFn = Callable[[str, str], None]
ActionHandler = Callable[[AlertAction], Optional[Awaitable[Any]]]

# store signals that bypass the "already processed" dedup
FORCING_SIGNALS = frozenset({"renewal_changed", "subscription_added"})


@dataclass(slots=True)
class OrchestratorConfig:
    """
    throttle_s:       triggers arriving within this window after a pass collapse into one trailing pass
    poll_interval_s:  fallback periodic refresh
    toast_throttle_s: identical toasts inside this window are delivered once
    """
    rules: AlertRules = field(default_factory=AlertRules)
    throttle_s: float = 0.3
    poll_interval_s: float = 60.0
    toast_throttle_s: float = 5.0
    inbox_maxsize: int = 1_000


def orchestrator_config_from_env() -> OrchestratorConfig:
    return OrchestratorConfig(
        rules=rules_from_env(),
        throttle_s=int(os.getenv("THROTTLE_MS", "300")) / 1000.0,
        poll_interval_s=float(os.getenv("POLL_INTERVAL_S", "60")),
        toast_throttle_s=float(os.getenv("TOAST_THROTTLE_S", "5")),
    )


@dataclass(slots=True, frozen=True)
class Trigger:
    reason: str
    force: bool = False


@dataclass(slots=True, frozen=True)
class EvaluatorSpec:
    name: str
    fn: Evaluator
    due_only: bool = False  # feed store.due_for_renewal() instead of every subscription


# fixed order: new-subscription must see the snapshot before it is replaced,
# and reads the renewal evaluator's checked keys
DEFAULT_EVALUATORS: tuple[EvaluatorSpec, ...] = (
    EvaluatorSpec("renewal", evaluate_renewals, due_only=True),
    EvaluatorSpec("missed_payment", evaluate_missed_payments),
    EvaluatorSpec("new_subscription", evaluate_new_subscriptions),
    EvaluatorSpec("spending", evaluate_spending),
)


class AlertOrchestrator:
    """
    Owns the ledger and the live alert list.

    Every refresh pass runs COLLECT -> EVALUATE -> MERGE -> PERSIST -> NOTIFY.
    Passes never overlap: callers queue on a lock and run after the pass in
    flight. Store signals, the poll timer and startup all push Triggers into
    one inbound queue; the coordinator loop runs the first trigger at once
    and folds everything that arrives during the throttle window into a
    single trailing pass.

    Also serves the notification surface: visible_alerts(), unread_count(),
    dismiss(), invoke_action().
    """
    def __init__(
        self,
        store: SubscriptionStore,
        ledger: AlertLedger,
        cfg: Optional[OrchestratorConfig] = None,
        *,
        notify: Optional[NotifyFn] = None,
        action_handler: Optional[ActionHandler] = None,
        on_alerts_changed: Optional[Callable[[list[Alert]], None]] = None,
        evaluators: Sequence[EvaluatorSpec] = DEFAULT_EVALUATORS,
        clock: Callable[[], datetime] = local_now,
    ):
        self.store = store
        self.ledger = ledger
        self.cfg = cfg or OrchestratorConfig()
        self.rules = self.cfg.rules
        self._notify = notify
        self._action_handler = action_handler
        self._on_alerts_changed = on_alerts_changed
        self._evaluators = tuple(evaluators)
        self._clock = clock

        self._alerts: list[Alert] = []
        self._toast_dedupe = TTLDeduper(ttl_s=self.cfg.toast_throttle_s, max_size=5_000)
        self._inbox: asyncio.Queue[Trigger] = asyncio.Queue(maxsize=self.cfg.inbox_maxsize)
        self._pass_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.passes = 0

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load persisted dismissals, subscribe to the store and start the loops."""
        await self.ledger.load()
        self.store.add_listener(self.on_store_change)
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self._coordinator_loop(), name="alerts-coordinator"),
            asyncio.create_task(self._poll_loop(), name="alerts-poll"),
        ]
        self.request_refresh("startup", force=True)

    async def stop(self) -> None:
        self._stop.set()
        self.store.remove_listener(self.on_store_change)
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                log.exception("orchestrator_task_failed", task=task.get_name())
        self._tasks = []

    # ------------------------------------------------------------------
    # triggers
    # ------------------------------------------------------------------

    def request_refresh(self, reason: str, force: bool = False) -> bool:
        try:
            self._inbox.put_nowait(Trigger(reason=reason, force=force))
            return True
        except asyncio.QueueFull:
            # poll loop still guarantees convergence
            log.warning("refresh_trigger_dropped", reason=reason)
            return False

    def on_store_change(self, signal: ChangeSignal, sub: Optional[Subscription]) -> None:
        self.request_refresh(f"store:{signal}", force=signal in FORCING_SIGNALS)

    def _drain_inbox(self) -> list[Trigger]:
        out: list[Trigger] = []
        while True:
            try:
                out.append(self._inbox.get_nowait())
            except asyncio.QueueEmpty:
                return out

    async def _coordinator_loop(self) -> None:
        try:
            while not self._stop.is_set():
                trigger = await self._inbox.get()
                await self.refresh(force=trigger.force, reason=trigger.reason)
                await asyncio.sleep(self.cfg.throttle_s)
                pending = self._drain_inbox()
                if pending:
                    log.debug("refresh_coalesced", triggers=len(pending))
                    await self.refresh(force=any(t.force for t in pending), reason="coalesced")
        except asyncio.CancelledError:
            return

    async def _poll_loop(self) -> None:
        try:
            while not self._stop.is_set():
                await asyncio.sleep(self.cfg.poll_interval_s)
                self.request_refresh("timer")
        except asyncio.CancelledError:
            return

    # ------------------------------------------------------------------
    # refresh pass
    # ------------------------------------------------------------------

    async def refresh(self, force: bool = False, reason: str = "manual") -> list[Alert]:
        """Run one full pass; returns the visible alerts afterwards."""
        async with self._pass_lock:
            return await self._run_pass(force, reason)

    async def force_refresh(self) -> list[Alert]:
        return await self.refresh(force=True, reason="force")

    async def _run_pass(self, force: bool, reason: str) -> list[Alert]:
        # COLLECT
        try:
            subs = await self.store.get_all()
            due = await self.store.due_for_renewal(
                self.rules.renewal_window_days, self.rules.grace_days
            )
        except Exception as e:
            # keep the previous snapshot; a later pass will catch up
            log.warning("collect_failed", reason=reason, err=str(e))
            return self.visible_alerts()
        now = self._clock()

        # EVALUATE
        view = self.ledger.view()
        patch = LedgerPatch()
        new_alerts: list[Alert] = []
        toasts: list[Toast] = []
        for spec in self._evaluators:
            try:
                res = spec.fn(due if spec.due_only else subs, view, now, force, self.rules)
            except Exception:
                log.exception("evaluator_failed", evaluator=spec.name)
                continue
            new_alerts.extend(res.new_alerts)
            toasts.extend(res.toasts)
            patch.merge(res.patch)
            view = view.with_checked(res.patch.checked_renewals)

        # MERGE
        self._alerts = self._merge(new_alerts)

        # PERSIST
        self.ledger.apply(patch)
        self.ledger.snapshot(subs)

        # NOTIFY
        self._flush_toasts(toasts)

        self.passes += 1
        log.info("alerts_refreshed", reason=reason, force=force, subscriptions=len(subs),
                 new=len(new_alerts), visible=self.unread_count())
        if self._on_alerts_changed is not None:
            try:
                self._on_alerts_changed(self.visible_alerts())
            except Exception as e:
                log.warning("alerts_listener_failed", err=str(e))
        return self.visible_alerts()

    def _merge(self, new_alerts: list[Alert]) -> list[Alert]:
        """
        new ∪ (existing - read - replaced-by-new), minus dismissed,
        newest first. Ids stay unique.
        """
        dismissed = self.ledger.dismissed_ids
        fresh: dict[str, Alert] = {}
        for a in new_alerts:
            if a.id in dismissed:
                continue
            fresh.setdefault(a.id, a)
        kept = [
            a for a in self._alerts
            if not a.read and a.id not in fresh and a.id not in dismissed
        ]
        merged = [*fresh.values(), *kept]
        merged.sort(key=lambda a: a.created_at, reverse=True)
        return merged

    def _flush_toasts(self, toasts: list[Toast]) -> None:
        for t in toasts:
            if not self._toast_dedupe.check_and_mark(f"{t.title}|{t.body}"):
                log.debug("toast_throttled", title=t.title)
                continue
            if self._notify is None:
                continue
            try:
                self._notify(t.title, t.body)
            except Exception as e:
                log.warning("toast_failed", title=t.title, err=str(e))

    # ------------------------------------------------------------------
    # notification surface
    # ------------------------------------------------------------------

    def visible_alerts(self) -> list[Alert]:
        return [a for a in self._alerts if not a.read]

    def unread_count(self) -> int:
        return sum(1 for a in self._alerts if not a.read)

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        return next((a for a in self._alerts if a.id == alert_id), None)

    async def dismiss(self, alert_id: str) -> bool:
        """
        Mark read and remember the id forever. Returns False when the id was
        not in the live list (it is still recorded as dismissed).
        """
        alert = self.get_alert(alert_id)
        if alert is not None:
            alert.read = True
        await self.ledger.mark_dismissed(alert_id)
        log.info("alert_dismissed", alert_id=alert_id)
        return alert is not None

    async def invoke_action(self, alert_id: str) -> bool:
        """Run the alert's action through the action handler, then dismiss it."""
        alert = self.get_alert(alert_id)
        if alert is None or alert.read:
            return False
        if self._action_handler is not None and alert.action.kind != "none":
            try:
                result = self._action_handler(alert.action)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.warning("alert_action_failed", alert_id=alert_id, err=str(e))
        await self.dismiss(alert_id)
        return True

    async def recommendations(self) -> list[Recommendation]:
        """Cost-saving suggestions for the current subscription set."""
        return get_recommendations(await self.store.get_all(), self.rules.currency_symbol)
