from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Awaitable, Callable, Mapping, Union


BreakerOpenCallback = Callable[[BaseException], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ApprovalDetails:
    """What the owner sees when asked to approve a call."""

    type: str
    user: str | None = None
    context: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ApprovalDetails":
        if "type" not in data:
            raise ValueError("approval_details requires a 'type'")
        return cls(
            type=str(data["type"]),
            user=data.get("user"),
            context=data.get("context"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-call-site retry, backoff and breaker thresholds.

    max_retries        — extra attempts after the first one (n -> at most n + 1 calls)
    breaker_limit      — consecutive retryable failures that open the breaker
    breaker_timeout_ms — cooldown while the breaker is open
    on_breaker_open    — called with the triggering error when this call opens the breaker
    require_approval   — route the call through the owner approval gate instead
    """

    max_retries: int = 3
    breaker_limit: int = 3
    breaker_timeout_ms: int = 120_000
    initial_backoff_ms: int = 200
    max_backoff_ms: int = 10_000
    on_breaker_open: BreakerOpenCallback | None = field(default=None, compare=False)
    require_approval: bool = False
    approval_details: ApprovalDetails | None = None

    def __post_init__(self) -> None:
        for name in ("max_retries", "breaker_timeout_ms", "initial_backoff_ms", "max_backoff_ms"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
        if isinstance(self.breaker_limit, bool) or not isinstance(self.breaker_limit, int) or self.breaker_limit < 1:
            raise ValueError(f"breaker_limit must be a positive integer, got {self.breaker_limit!r}")
        if self.initial_backoff_ms > self.max_backoff_ms:
            raise ValueError("initial_backoff_ms must not exceed max_backoff_ms")
        if self.require_approval and self.approval_details is None:
            raise ValueError("require_approval is set but no approval_details were provided")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: "RetryPolicy | None" = None) -> "RetryPolicy":
        """Build a policy from a YAML mapping, layered on top of `base` (or the defaults)."""
        allowed = {f.name for f in fields(cls)} - {"on_breaker_open"}
        unknown = set(data) - allowed
        if unknown:
            raise ValueError(f"Unknown retry policy option(s): {', '.join(sorted(unknown))}")

        kwargs = dict(data)
        if isinstance(kwargs.get("approval_details"), Mapping):
            kwargs["approval_details"] = ApprovalDetails.from_mapping(kwargs["approval_details"])
        return replace(base or cls(), **kwargs)

    def with_callback(self, callback: BreakerOpenCallback | None) -> "RetryPolicy":
        return replace(self, on_breaker_open=callback)
