from __future__ import annotations
import asyncio
from collections import deque
from dataclasses import dataclass

from subtrack.utils.types import Toast

@dataclass(slots=True)
class QueueStats:
    accepted: int = 0
    evicted: int = 0
    delivered: int = 0

class ToastQueue:
    """
    Bounded toast buffer between the orchestrator and the delivery sinks.
    put() never blocks: when full the oldest pending toast is evicted, since
    a fresh reminder matters more than a stale one.
    """
    def __init__(self, maxsize: int = 2000):
        self._items: deque[Toast] = deque()
        self._maxsize = maxsize
        self._ready = asyncio.Event()
        self.stats = QueueStats()

    def __len__(self) -> int:
        return len(self._items)

    def offer(self, toast: Toast) -> bool:
        """Enqueue; returns False when an older toast had to be evicted."""
        evicted = len(self._items) >= self._maxsize
        if evicted:
            self._items.popleft()
            self.stats.evicted += 1
        self._items.append(toast)
        self.stats.accepted += 1
        self._ready.set()
        return not evicted

    def put(self, title: str, body: str) -> None:
        # signature matches AlertOrchestrator's notify hook
        self.offer(Toast(title=title, body=body))

    async def get(self) -> Toast:
        while not self._items:
            self._ready.clear()
            await self._ready.wait()
        self.stats.delivered += 1
        return self._items.popleft()
