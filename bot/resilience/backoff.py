from __future__ import annotations

from typing import List


def backoff_delay_ms(attempt: int, initial_backoff_ms: float, max_backoff_ms: float) -> float:
    """
    Delay applied after the `attempt`-th failure (1-based), before the next try.

    Doubles from `initial_backoff_ms` and is capped at `max_backoff_ms`. No jitter.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(initial_backoff_ms * 2 ** (attempt - 1), max_backoff_ms)


def backoff_schedule(count: int, initial_backoff_ms: float, max_backoff_ms: float) -> List[float]:
    return [backoff_delay_ms(a, initial_backoff_ms, max_backoff_ms) for a in range(1, count + 1)]
