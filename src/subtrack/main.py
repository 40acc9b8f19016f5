# src/subtrack/main.py
import asyncio
import logging

import structlog
from dotenv import load_dotenv

from subtrack.config import AppConfig, build_storage, config_from_env

# Alerts
from subtrack.alerts.formatting import format_alert_line, format_toast
from subtrack.alerts.notifiers import ConsoleNotifier, toast_router_loop
from subtrack.alerts.orchestrator import AlertOrchestrator
from subtrack.alerts.state import AlertLedger

# Store
from subtrack.store.sample import sample_subscriptions
from subtrack.store.subscriptions import SubscriptionStore
from subtrack.utils.time import local_now
from subtrack.utils.types import Alert, AlertAction

# Telegram notifier (optional)
from subtrack.notify.queue import ToastQueue
from subtrack.notify.telegram import TelegramNotifier, config_from_env as telegram_config_from_env

load_dotenv()
log = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    lvl = getattr(logging, level.upper(), None)
    if not isinstance(lvl, int):
        lvl = logging.INFO
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(lvl))


def print_alerts(alerts: list[Alert]) -> None:
    """Stand-in surface: re-render the whole list after each pass."""
    print(f"--- {len(alerts)} unread alert(s) ---", flush=True)
    for a in alerts:
        print(format_alert_line(a), flush=True)


def log_action(action: AlertAction) -> None:
    log.info("alert_action", kind=action.kind, subscription_id=action.subscription_id,
             category=action.category)


async def main(cfg: AppConfig | None = None):
    cfg = cfg or config_from_env()
    configure_logging(cfg.log_level)

    storage = build_storage(cfg)
    store = SubscriptionStore(storage, cfg.user_id)
    if cfg.user_id is None:
        log.warning("no_user_configured_alerts_disabled")
    elif cfg.seed_sample:
        await store.seed_if_empty(sample_subscriptions(local_now()))

    # ----- Notifications -----
    notify_q = ToastQueue(maxsize=2000)
    console_notifier = ConsoleNotifier(format_fn=format_toast)
    sinks = [console_notifier]

    # Optional Telegram (built from env). If not configured, we skip it.
    tg_notifier = None
    try:
        tg_notifier = TelegramNotifier(cfg=telegram_config_from_env())
        sinks.append(tg_notifier)
        log.info("telegram_enabled")
    except ValueError:
        log.info("telegram_disabled_missing_env")

    ledger = AlertLedger(storage, cfg.user_id or "anonymous")
    orchestrator = AlertOrchestrator(
        store,
        ledger,
        cfg.orchestrator,
        notify=notify_q.put,
        action_handler=log_action,
        on_alerts_changed=print_alerts,
    )

    # ----- Run everything -----
    if tg_notifier is not None:
        await tg_notifier.start()
    await orchestrator.start()
    for rec in await orchestrator.recommendations():
        log.info("recommendation", kind=rec.kind, id=rec.id, message=rec.message)
    router = asyncio.create_task(toast_router_loop(notify_q, *sinks), name="toast-router")
    try:
        await asyncio.Event().wait()
    finally:
        # graceful shutdown to avoid unclosed sessions
        router.cancel()
        await orchestrator.stop()
        if tg_notifier is not None:
            await tg_notifier.stop()
        close = getattr(storage, "close", None)
        if close is not None:
            await close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
