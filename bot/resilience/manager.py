from __future__ import annotations

import logging
from typing import Any, List

from .approval import ApprovalDecision, ApprovalQueue, ApprovalRequest
from .breaker import CircuitBreakerState
from .notifier import OwnerNotifier


logger = logging.getLogger(__name__)


class BreakerManager:
    """
    Administrative view of the gateway's breaker and approval queue.

    Holds no state of its own: the breaker it opens and resets is the one the
    retry executor consults, and the queue it approves from is the one the
    approval gate waits on.
    """

    def __init__(self, state: CircuitBreakerState, queue: ApprovalQueue, notifier: OwnerNotifier):
        self._state = state
        self._queue = queue
        self._notifier = notifier

    # ── Breaker ──────────────────────────────────────────────────────────────

    def set_open(self, is_open: bool) -> None:
        if is_open:
            self._state.force_open()
            logger.warning("Circuit breaker opened manually")
        else:
            self._state.reset()
            logger.info("Circuit breaker closed manually")

    def is_open(self) -> bool:
        return self._state.is_open

    def reset(self) -> None:
        self._state.reset()
        dropped = self._queue.clear()
        logger.info("Circuit breaker reset; %d pending approval(s) denied", len(dropped))

    def status(self, timeout_ms: float | None = None) -> dict[str, Any]:
        return {**self._state.snapshot(timeout_ms), "pending_approvals": len(self._queue)}

    # ── Approvals ────────────────────────────────────────────────────────────

    def queue_approval_request(self, request: ApprovalRequest) -> None:
        self._queue.add(request)

    def get_pending_requests(self) -> List[ApprovalRequest]:
        return self._queue.pending()

    def approve_request(self, request_id: str) -> ApprovalRequest | None:
        return self._queue.resolve(request_id)

    def deny_request(self, request_id: str) -> ApprovalRequest | None:
        return self._queue.reject(request_id, ApprovalDecision.DENIED)

    # ── Notifications ────────────────────────────────────────────────────────

    async def notify_owner(self, reason: str) -> None:
        try:
            await self._notifier.notify_breaker_open(reason)
        except Exception as e:  # noqa: BLE001
            logger.error("Error notifying owner about breaker: %s", e)
