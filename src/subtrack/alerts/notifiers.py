# src/subtrack/alerts/notifiers.py
from __future__ import annotations
import asyncio
import sys
from typing import Callable, Optional, Protocol, TextIO

import structlog

from subtrack.utils.types import Toast

log = structlog.get_logger("notifier")

class ToastSink(Protocol):
    async def send(self, toast: Toast) -> object: ...

class ConsoleNotifier:
    """Writes toasts to a text stream (stdout unless given)."""
    def __init__(self, format_fn: Optional[Callable[[Toast], str]] = None,
                 stream: Optional[TextIO] = None):
        self._format_fn = format_fn
        self._stream = stream

    def render(self, toast: Toast) -> str:
        if self._format_fn is not None:
            try:
                return self._format_fn(toast)
            except Exception as e:
                log.warning("console_format_failed", title=toast.title, err=str(e))
        return f"[TOAST] {toast.title}: {toast.body}"

    async def send(self, toast: Toast) -> None:
        print(self.render(toast), file=self._stream or sys.stdout, flush=True)


async def toast_router_loop(queue, *sinks: ToastSink) -> None:
    """
    Drain toasts from `queue` and hand each to every sink.
    A failing sink is logged and skipped; the loop keeps running.
    """
    try:
        while True:
            toast = await queue.get()
            for sink in sinks:
                try:
                    await sink.send(toast)
                except Exception as e:
                    log.warning("toast_sink_failed", sink=type(sink).__name__, err=str(e))
    except asyncio.CancelledError:
        return
