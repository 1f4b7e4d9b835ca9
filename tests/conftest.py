"""Shared fixtures: a controllable clock, recorded sleeps and in-memory notification channels."""

from __future__ import annotations

import asyncio
from typing import Callable, List

import pytest

from bot.resilience import OwnerNotifier, ResilienceGateway, RetryPolicy


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000


class RecordingSleep:
    """Stands in for asyncio.sleep; records the requested delays in seconds."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeChannels:
    def __init__(self, fail_primary: bool = False, fail_secondary: bool = False) -> None:
        self.fail_primary = fail_primary
        self.fail_secondary = fail_secondary
        self.primary: List[str] = []
        self.secondary: List[str] = []

    async def notify_primary(self, message: str) -> None:
        if self.fail_primary:
            raise RuntimeError("DMs disabled")
        self.primary.append(message)

    async def notify_secondary(self, message: str) -> None:
        if self.fail_secondary:
            raise RuntimeError("channel missing")
        self.secondary.append(message)


class UpstreamError(Exception):
    """Minimal HTTP-ish error carrying a status code."""

    def __init__(self, status_code: int = 500, message: str = "upstream failed", code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class Flaky:
    """Async operation that fails `failures` times, then returns `result`."""

    def __init__(self, failures: int, result: object = "ok", error: Callable[[], Exception] = UpstreamError):
        self.failures = failures
        self.result = result
        self.error = error
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error()
        return self.result


async def wait_for_pending(gateway: ResilienceGateway, count: int = 1) -> None:
    for _ in range(100):
        if len(gateway.queue) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} pending approval(s), found {len(gateway.queue)}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def channels() -> FakeChannels:
    return FakeChannels()


@pytest.fixture
def gateway(clock: FakeClock, sleeps: RecordingSleep, channels: FakeChannels) -> ResilienceGateway:
    return ResilienceGateway(
        OwnerNotifier(channels),
        default_policy=RetryPolicy(),
        clock=clock,
        sleep=sleeps,
    )
