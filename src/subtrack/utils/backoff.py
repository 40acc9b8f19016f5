from __future__ import annotations

import random
from typing import Iterator, Optional

def next_backoff(prev: float, cap: float) -> float:
    """Exponential backoff progression with cap (no jitter)."""
    return min(prev * 2.0, cap)

def jitter(v: float, *, ratio: float = 0.2, rng: Optional[random.Random] = None) -> float:
    """Scale v by a random factor in [1-ratio, 1+ratio]."""
    r = (rng or random).random()
    return v * ((1.0 - ratio) + 2.0 * ratio * r)

def retry_delays(
    attempts: int,
    initial: float = 0.5,
    cap: float = 8.0,
    *,
    jitter_ratio: float = 0.0,
) -> Iterator[float]:
    """
    Sleep durations between `attempts` tries: one fewer than attempts,
    doubling from `initial` up to `cap`, optionally jittered.
    """
    v = initial
    for _ in range(max(0, attempts - 1)):
        yield jitter(v, ratio=jitter_ratio) if jitter_ratio else v
        v = next_backoff(v, cap)
