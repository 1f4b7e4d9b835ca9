"""
bot/resilience/breaker.py

Consecutive-failure circuit breaker shared by every guarded call site.

State machine:
  closed --(failure_count reaches limit)--> open
  open   --(timeout elapsed, seen by check_open)--> closed, failure_count = 0

There is no explicit half-open state: the first call after the cooldown is an
ordinary attempt. A failure on that trial attempt counts from zero again.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BreakerCheck:
    blocked: bool
    retry_after_ms: float = 0.0


class CircuitBreakerState:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        clock — returns seconds; monotonic by default, replaceable in tests.
        """
        self._clock = clock
        self.failure_count = 0
        self.is_open = False
        self.opened_at: float | None = None

    def now(self) -> float:
        return self._clock()

    # ── Queries ──────────────────────────────────────────────────────────────

    def check_open(self, timeout_ms: float, now: float | None = None) -> BreakerCheck:
        if not self.is_open:
            return BreakerCheck(blocked=False)

        now = self.now() if now is None else now
        elapsed_ms = (now - self.opened_at) * 1000
        if elapsed_ms < timeout_ms:
            return BreakerCheck(blocked=True, retry_after_ms=timeout_ms - elapsed_ms)

        logger.info(
            "Circuit breaker cooldown elapsed after %.0fms; closing for a trial attempt",
            elapsed_ms,
        )
        self.is_open = False
        self.opened_at = None
        self.failure_count = 0
        return BreakerCheck(blocked=False)

    def snapshot(self, timeout_ms: float | None = None) -> dict[str, Any]:
        retry_after_ms = 0.0
        if self.is_open and timeout_ms is not None:
            retry_after_ms = max(0.0, timeout_ms - (self.now() - self.opened_at) * 1000)
        return {
            "is_open": self.is_open,
            "failure_count": self.failure_count,
            "opened_at": self.opened_at,
            "retry_after_ms": retry_after_ms,
        }

    # ── Mutations ────────────────────────────────────────────────────────────

    def record_failure(self, limit: int, now: float | None = None) -> bool:
        """Count one retryable failure. Returns True only on the closed -> open transition."""
        self.failure_count += 1
        if self.is_open or self.failure_count < limit:
            return False
        self.is_open = True
        self.opened_at = self.now() if now is None else now
        logger.warning("Circuit breaker opened after %d consecutive failures", self.failure_count)
        return True

    def record_success(self) -> None:
        self.failure_count = 0

    def force_open(self, now: float | None = None) -> None:
        if self.is_open:
            return
        self.is_open = True
        self.opened_at = self.now() if now is None else now

    def reset(self) -> None:
        self.failure_count = 0
        self.is_open = False
        self.opened_at = None
