from __future__ import annotations

import math
from typing import Any


NON_RETRYABLE_STATUSES = frozenset({401, 403})
NON_RETRYABLE_CODES = frozenset({"invalid_request_error", "moderation_blocked"})
CONTENT_POLICY_MARKERS = ("content policy", "safety system")


class ResilienceError(Exception):
    """Base error for the resilience gateway."""


class BreakerOpenError(ResilienceError):
    """The breaker was already open; the operation was not invoked."""

    def __init__(self, retry_after_ms: float):
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"Circuit breaker is open. Try again in {math.ceil(retry_after_ms / 1000)}s"
        )


class BreakerOpenedJustNowError(ResilienceError):
    """This call's failure tipped the breaker open."""

    def __init__(self, cause: BaseException, failure_count: int):
        self.cause = cause
        self.failure_count = failure_count
        super().__init__(f"Circuit breaker opened due to repeated failures: {cause}")


class ApprovalDeniedError(ResilienceError):
    def __init__(self, request_id: str, reason: str = "denied"):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Operation not approved by owner ({reason}): {request_id}")


def error_status(error: BaseException) -> int | None:
    """
    Best-effort HTTP status of an upstream error.

    openai.APIStatusError and ollama.ResponseError expose `status_code`,
    discord.HTTPException exposes `status`, httpx.HTTPStatusError carries it
    on `response`.
    """
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response: Any = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_non_retryable(error: BaseException) -> bool:
    """True for errors caused by the request itself (auth, policy), not by flaky infrastructure."""
    status = error_status(error)
    if status in NON_RETRYABLE_STATUSES:
        return True

    code = getattr(error, "code", None)
    if isinstance(code, str) and code in NON_RETRYABLE_CODES:
        return True

    if status == 400:
        text = str(error).lower()
        return any(marker in text for marker in CONTENT_POLICY_MARKERS)
    return False
