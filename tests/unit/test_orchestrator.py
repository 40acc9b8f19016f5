import asyncio

import pytest

from storage.kv import MemoryStorage
from subtrack.alerts.evaluators import EvaluationResult, evaluate_renewals
from subtrack.alerts.orchestrator import AlertOrchestrator, EvaluatorSpec, OrchestratorConfig
from subtrack.alerts.rules import AlertRules
from subtrack.alerts.state import AlertLedger
from subtrack.store.subscriptions import SubscriptionStore
from subtrack.utils.types import AlertAction

from tests.helpers.fakes import FakeClock, RecordingNotify, make_sub, wait_until


def _build(storage=None, clock=None, cfg=None, **kw):
    storage = storage or MemoryStorage()
    clock = clock or FakeClock()
    store = SubscriptionStore(storage, "u1", clock=clock)
    ledger = AlertLedger(storage, "u1")
    notify = kw.pop("notify", None) or RecordingNotify()
    orch = AlertOrchestrator(store, ledger, cfg, notify=notify, clock=clock, **kw)
    return orch, store, notify

async def _seed(store):
    for s in [
        make_sub("overdue", due_in_days=-1),
        make_sub("soon", due_in_days=5),
        make_sub("later", due_in_days=40),
    ]:
        await store.save(s)

def _ids(alerts):
    return [a.id for a in alerts]


@pytest.mark.asyncio
async def test_refresh_is_idempotent():
    orch, store, _ = _build()
    await _seed(store)

    first = await orch.refresh()
    second = await orch.refresh()
    assert _ids(first) == _ids(second)
    assert len(set(_ids(second))) == len(second)
    assert set(_ids(first)) == {
        "renewal-overdue-2026-03-09",
        "missedPayment-overdue-1",
        "renewal-soon-2026-03-15",
    }

@pytest.mark.asyncio
async def test_force_refresh_keeps_ids_unique():
    orch, store, _ = _build()
    await _seed(store)
    await orch.refresh()
    alerts = await orch.force_refresh()
    assert len(set(_ids(alerts))) == len(alerts) == 3

@pytest.mark.asyncio
async def test_new_subscription_near_renewal_scenario():
    orch, store, notify = _build()
    assert await orch.force_refresh() == []

    await store.save(make_sub("hulu", name="Hulu", due_in_days=2))
    alerts = await orch.force_refresh()

    assert sorted(a.kind for a in alerts) == ["newSubscription", "renewal"]
    renewal = next(a for a in alerts if a.kind == "renewal")
    assert renewal.id == "renewal-hulu-2026-03-12"
    assert renewal.title.startswith("Urgent: ")
    assert notify.calls == [("Hulu renewal reminder", "Your subscription will renew in 2 days.")]

@pytest.mark.asyncio
async def test_first_pass_only_sets_baseline():
    orch, store, notify = _build()
    await store.save(make_sub("a", due_in_days=30))
    alerts = await orch.refresh()
    assert alerts == []
    assert orch.ledger.view().subscription_ids == ("a",)

@pytest.mark.asyncio
async def test_dismissed_alert_stays_gone_across_reload():
    storage = MemoryStorage()
    clock = FakeClock()
    orch, store, _ = _build(storage=storage, clock=clock)
    await _seed(store)
    await orch.refresh()

    assert await orch.dismiss("renewal-soon-2026-03-15") is True
    assert "renewal-soon-2026-03-15" not in _ids(orch.visible_alerts())
    assert "renewal-soon-2026-03-15" not in _ids(await orch.force_refresh())

    # fresh engine over the same storage, as after a restart
    reloaded, _, _ = _build(storage=storage, clock=clock)
    await reloaded.ledger.load()
    alerts = await reloaded.force_refresh()
    assert "renewal-soon-2026-03-15" not in _ids(alerts)
    assert "renewal-overdue-2026-03-09" in _ids(alerts)

@pytest.mark.asyncio
async def test_dismiss_unknown_id_is_still_remembered():
    orch, _, _ = _build()
    assert await orch.dismiss("renewal-ghost-2026-01-01") is False
    assert "renewal-ghost-2026-01-01" in orch.ledger.dismissed_ids

@pytest.mark.asyncio
async def test_unread_count_and_prune_after_dismiss():
    orch, store, _ = _build()
    await _seed(store)
    await orch.refresh()
    assert orch.unread_count() == 3

    await orch.dismiss("missedPayment-overdue-1")
    assert orch.unread_count() == 2
    await orch.refresh()
    assert orch.get_alert("missedPayment-overdue-1") is None

@pytest.mark.asyncio
async def test_missed_payment_escalates_next_day():
    clock = FakeClock()
    orch, store, _ = _build(clock=clock)
    await store.save(make_sub("s1", due_in_days=-1))
    await orch.refresh()
    assert "missedPayment-s1-1" in _ids(orch.visible_alerts())

    clock.advance(days=1)
    alerts = await orch.refresh()
    assert "missedPayment-s1-2" in _ids(alerts)
    assert _ids(alerts).count("missedPayment-s1-1") == 1

@pytest.mark.asyncio
async def test_alerts_sorted_newest_first():
    clock = FakeClock()
    orch, store, _ = _build(clock=clock)
    await store.save(make_sub("s1", due_in_days=-1))
    await orch.refresh()
    clock.advance(days=1)
    alerts = await orch.refresh()
    stamps = [a.created_at for a in alerts]
    assert stamps == sorted(stamps, reverse=True)

@pytest.mark.asyncio
async def test_failing_evaluator_does_not_stop_others():
    def broken(subs, view, now, force, rules):
        raise RuntimeError("boom")

    orch, store, _ = _build(evaluators=(
        EvaluatorSpec("broken", broken),
        EvaluatorSpec("renewal", evaluate_renewals, due_only=True),
    ))
    await store.save(make_sub("soon", due_in_days=5))
    alerts = await orch.refresh()
    assert _ids(alerts) == ["renewal-soon-2026-03-15"]

@pytest.mark.asyncio
async def test_collect_failure_keeps_previous_snapshot():
    orch, store, _ = _build()

    async def unavailable():
        raise ConnectionError("storage offline")

    store.get_all = unavailable
    assert await orch.refresh() == []
    assert orch.ledger.view().has_snapshot is False
    assert orch.passes == 0


@pytest.mark.asyncio
async def test_new_subscription_with_stale_billing_date_has_no_renewal_reminder():
    orch, store, notify = _build()
    assert await orch.force_refresh() == []

    await store.save(make_sub("old", due_in_days=-330))
    alerts = await orch.force_refresh()
    assert _ids(alerts) == ["newSubscription-old"]
    assert notify.calls == []

@pytest.mark.asyncio
async def test_overdue_grace_comes_from_rules():
    seen = {}
    for grace in (7, 10):
        orch, store, _ = _build(cfg=OrchestratorConfig(rules=AlertRules(grace_days=grace)))
        await store.save(make_sub("late", due_in_days=-9))
        seen[grace] = _ids(await orch.refresh())
    assert "renewal-late-2026-03-01" not in seen[7]
    assert "renewal-late-2026-03-01" in seen[10]

@pytest.mark.asyncio
async def test_anonymous_store_refresh_is_empty():
    storage = MemoryStorage()
    clock = FakeClock()
    store = SubscriptionStore(storage, None, clock=clock)
    orch = AlertOrchestrator(store, AlertLedger(storage, "anonymous"), notify=RecordingNotify(),
                             clock=clock)
    assert await orch.refresh() == []
    assert await orch.force_refresh() == []
    assert orch.passes == 2
    assert await orch.recommendations() == []

@pytest.mark.asyncio
async def test_recommendations_cover_current_subscriptions():
    orch, store, _ = _build()
    await _seed(store)
    recs = await orch.recommendations()
    assert [r.id for r in recs] == ["rec-cat-Entertainment"]
    assert sorted(recs[0].subscription_ids) == ["later", "overdue", "soon"]
@pytest.mark.asyncio
async def test_evaluators_get_due_list_or_everything():
    seen = {}

    def spy(name):
        def fn(subs, view, now, force, rules):
            seen[name] = sorted(s.id for s in subs)
            return EvaluationResult()
        return fn

    orch, store, _ = _build(evaluators=(
        EvaluatorSpec("due", spy("due"), due_only=True),
        EvaluatorSpec("all", spy("all")),
    ))
    await _seed(store)
    await orch.refresh()
    assert seen["due"] == ["overdue", "soon"]
    assert seen["all"] == ["later", "overdue", "soon"]

@pytest.mark.asyncio
async def test_identical_toasts_throttled():
    clock = FakeClock()
    orch, store, notify = _build(clock=clock)
    await store.save(make_sub("s1", name="Gym", due_in_days=2))
    await orch.refresh()
    assert len(notify.calls) == 1

    # a fresh session would toast again; the throttle window suppresses it
    orch.ledger.reset_session()
    await orch.refresh()
    assert len(notify.calls) == 1

@pytest.mark.asyncio
async def test_invoke_action_runs_handler_then_dismisses():
    handled = []
    orch, store, _ = _build(action_handler=handled.append)
    await store.save(make_sub("soon", due_in_days=5))
    await orch.refresh()

    assert await orch.invoke_action("renewal-soon-2026-03-15") is True
    assert handled == [AlertAction.edit_subscription("soon")]
    assert orch.unread_count() == 0
    assert "renewal-soon-2026-03-15" in orch.ledger.dismissed_ids
    # already read
    assert await orch.invoke_action("renewal-soon-2026-03-15") is False
    assert await orch.invoke_action("nope") is False

@pytest.mark.asyncio
async def test_invoke_action_awaits_async_handler_and_survives_errors():
    calls = []

    async def handler(action):
        calls.append(action.kind)
        raise RuntimeError("navigation failed")

    orch, store, _ = _build(action_handler=handler)
    await store.save(make_sub("soon", due_in_days=5))
    await orch.refresh()
    assert await orch.invoke_action("renewal-soon-2026-03-15") is True
    assert calls == ["edit_subscription"]
    assert orch.unread_count() == 0

@pytest.mark.asyncio
async def test_on_alerts_changed_receives_visible_list():
    pushed = []
    orch, store, _ = _build(on_alerts_changed=pushed.append)
    await _seed(store)
    await orch.refresh()
    assert len(pushed) == 1 and len(pushed[0]) == 3


# ---------------- coordinator / triggers ----------------

def _fast_cfg(**kw):
    return OrchestratorConfig(throttle_s=kw.pop("throttle_s", 0.05),
                              poll_interval_s=kw.pop("poll_interval_s", 3600), **kw)

@pytest.mark.asyncio
async def test_start_runs_startup_pass_and_store_changes_trigger_refresh():
    orch, store, _ = _build(cfg=_fast_cfg())
    await orch.start()
    try:
        await wait_until(lambda: orch.passes >= 1)
        await store.save(make_sub("new", due_in_days=30))
        await wait_until(lambda: orch.get_alert("newSubscription-new") is not None)
    finally:
        await orch.stop()

@pytest.mark.asyncio
async def test_burst_of_triggers_coalesces():
    orch, _, _ = _build(cfg=_fast_cfg())
    await orch.start()
    try:
        await wait_until(lambda: orch.passes >= 1)
        await asyncio.sleep(0.1)
        before = orch.passes

        for i in range(10):
            orch.request_refresh(f"burst-{i}")
        await asyncio.sleep(0.3)
        assert 1 <= orch.passes - before <= 2
    finally:
        await orch.stop()

@pytest.mark.asyncio
async def test_poll_timer_triggers_refresh():
    orch, _, _ = _build(cfg=_fast_cfg(poll_interval_s=0.05, throttle_s=0.01))
    await orch.start()
    try:
        await wait_until(lambda: orch.passes >= 3)
    finally:
        await orch.stop()

@pytest.mark.asyncio
async def test_full_inbox_drops_trigger():
    orch, _, _ = _build(cfg=_fast_cfg(inbox_maxsize=1))
    assert orch.request_refresh("a") is True
    assert orch.request_refresh("b") is False

@pytest.mark.asyncio
async def test_stop_unsubscribes_from_store():
    orch, store, _ = _build(cfg=_fast_cfg())
    await orch.start()
    await orch.stop()
    assert orch.on_store_change not in store._listeners

@pytest.mark.asyncio
async def test_concurrent_refreshes_never_overlap():
    orch, store, _ = _build()
    await _seed(store)
    real_get_all = store.get_all
    in_flight = [0]
    peak = [0]

    async def slow_get_all():
        in_flight[0] += 1
        peak[0] = max(peak[0], in_flight[0])
        try:
            await asyncio.sleep(0.01)
            return await real_get_all()
        finally:
            in_flight[0] -= 1

    store.get_all = slow_get_all
    await asyncio.gather(*(orch.refresh() for _ in range(5)))
    assert peak[0] == 1
    assert orch.passes == 5
    assert len(set(_ids(orch.visible_alerts()))) == len(orch.visible_alerts()) == 3

@pytest.mark.asyncio
async def test_stop_survives_crashed_task():
    orch, _, _ = _build(cfg=_fast_cfg())

    async def crash(force=False, reason="manual"):
        raise RuntimeError("pass exploded")

    orch.refresh = crash
    await orch.start()
    coordinator = orch._tasks[0]
    await wait_until(coordinator.done)
    await orch.stop()
    assert orch._tasks == []
