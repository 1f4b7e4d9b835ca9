from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from .backoff import backoff_delay_ms
from .breaker import CircuitBreakerState
from .errors import BreakerOpenError, BreakerOpenedJustNowError, is_non_retryable
from .manager import BreakerManager
from .policy import RetryPolicy


logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]


class RetryExecutor:
    def __init__(
        self,
        state: CircuitBreakerState,
        manager: BreakerManager,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        sleep — awaited with seconds between attempts. asyncio.sleep is
                cancellable, so cancelling the calling task aborts the backoff.
        """
        self._state = state
        self._manager = manager
        self._sleep = sleep

    def ensure_closed(self, policy: RetryPolicy) -> None:
        check = self._state.check_open(policy.breaker_timeout_ms)
        if check.blocked:
            logger.info("Circuit breaker open; rejecting call (%.0fms left)", check.retry_after_ms)
            raise BreakerOpenError(check.retry_after_ms)

    async def run(self, operation: Operation, policy: RetryPolicy) -> Any:
        """
        Run `operation` with retries, backoff and breaker accounting.

        Raises:
            BreakerOpenError: the breaker was open before the first attempt.
            BreakerOpenedJustNowError: a failure in this call opened the breaker.
            Exception: the operation's own error when it is non-retryable or
                the retry budget is exhausted.
        """
        self.ensure_closed(policy)

        attempt = 0
        while True:
            try:
                result = await operation()
            except Exception as err:
                if is_non_retryable(err):
                    logger.warning(
                        "Non-retryable error on attempt %d, failing immediately: %s",
                        attempt + 1, err,
                    )
                    raise

                opened = self._state.record_failure(policy.breaker_limit)
                logger.warning(
                    "Operation failed (attempt %d/%d, breaker failures %d/%d): %s",
                    attempt + 1, policy.max_retries + 1,
                    self._state.failure_count, policy.breaker_limit, err,
                )
                if opened:
                    await self._on_opened(err, policy)
                    raise BreakerOpenedJustNowError(err, self._state.failure_count) from err

                if attempt >= policy.max_retries:
                    logger.warning("Retries exhausted after %d attempt(s)", attempt + 1)
                    raise

                attempt += 1
                delay_ms = backoff_delay_ms(attempt, policy.initial_backoff_ms, policy.max_backoff_ms)
                logger.info("Backing off %.0fms before attempt %d", delay_ms, attempt + 1)
                await self._sleep(delay_ms / 1000)

                # Another call may have opened the shared breaker while this one slept.
                self.ensure_closed(policy)
                continue

            self._state.record_success()
            return result

    async def _on_opened(self, err: BaseException, policy: RetryPolicy) -> None:
        if policy.on_breaker_open is not None:
            try:
                maybe_awaitable = policy.on_breaker_open(err)
                if inspect.isawaitable(maybe_awaitable):
                    await maybe_awaitable
            except Exception as e:  # noqa: BLE001
                logger.error("Error in on_breaker_open callback: %s", e)

        await self._manager.notify_owner(
            f"Repeated failures ({self._state.failure_count}): {err}"
        )
