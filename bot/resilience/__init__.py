from .approval import (
    ApprovalDecision,
    ApprovalGate,
    ApprovalOutcome,
    ApprovalQueue,
    ApprovalRequest,
)
from .backoff import backoff_delay_ms, backoff_schedule
from .breaker import BreakerCheck, CircuitBreakerState
from .errors import (
    ApprovalDeniedError,
    BreakerOpenError,
    BreakerOpenedJustNowError,
    ResilienceError,
    error_status,
    is_non_retryable,
)
from .executor import RetryExecutor
from .gateway import ResilienceGateway
from .manager import BreakerManager
from .notifier import LoggingChannels, NotificationChannels, OwnerNotifier
from .policy import ApprovalDetails, RetryPolicy

__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalOutcome",
    "ApprovalQueue",
    "ApprovalRequest",
    "backoff_delay_ms",
    "backoff_schedule",
    "BreakerCheck",
    "CircuitBreakerState",
    "ApprovalDeniedError",
    "BreakerOpenError",
    "BreakerOpenedJustNowError",
    "ResilienceError",
    "error_status",
    "is_non_retryable",
    "RetryExecutor",
    "ResilienceGateway",
    "BreakerManager",
    "LoggingChannels",
    "NotificationChannels",
    "OwnerNotifier",
    "ApprovalDetails",
    "RetryPolicy",
]
