from __future__ import annotations
import time
from collections import OrderedDict
from datetime import datetime
from typing import Callable

def alert_id(kind: str, subject_id: str, *discriminants: object) -> str:
    """
    Deterministic alert id: kind-subject[-discriminant...].
    The same logical event always maps to the same id; empty parts are dropped.
    """
    parts = [kind, subject_id, *(str(d) for d in discriminants if d is not None)]
    return "-".join(p for p in parts if p)

def time_bucket(now: datetime, seconds: int = 60) -> int:
    """Coarse time bucket: floor(epoch / seconds)."""
    return int(now.timestamp() // seconds)


class TTLDeduper:
    """
    Remembers keys for ttl_s seconds, oldest first. Collapses bursts of
    identical toasts; at most max_size keys are kept.
    """
    def __init__(self, ttl_s: float, max_size: int = 10_000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self.max_size = max_size
        self._clock = clock
        self._expiry: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._expiry)

    def _evict(self, now: float) -> None:
        # constant ttl, so insertion order is expiry order
        while self._expiry:
            key, exp = next(iter(self._expiry.items()))
            if exp > now and len(self._expiry) <= self.max_size:
                break
            self._expiry.popitem(last=False)

    def seen_recently(self, key: str) -> bool:
        self._evict(self._clock())
        return key in self._expiry

    def mark(self, key: str) -> None:
        now = self._clock()
        self._expiry.pop(key, None)
        self._expiry[key] = now + self.ttl_s
        self._evict(now)

    def check_and_mark(self, key: str) -> bool:
        """True (and remembers key) unless key was marked within ttl_s."""
        if self.seen_recently(key):
            return False
        self.mark(key)
        return True
