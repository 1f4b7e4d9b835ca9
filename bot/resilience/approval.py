"""
bot/resilience/approval.py

Human-in-the-loop approval gate.

A gated call creates an ApprovalRequest, parks it in the ApprovalQueue and
waits on the request's future until the owner approves or denies it (via the
/circuitbreaker admin commands) or the expiry sweep gives up on it. Only an
approved request runs the operation, exactly once.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List

from .policy import ApprovalDetails

if TYPE_CHECKING:
    from .notifier import OwnerNotifier


logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class ApprovalDecision(enum.Enum):
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ApprovalRequest:
    type: str
    requested_by: str | None = None
    context: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    requested_at: datetime = field(default_factory=_utcnow)
    _decision: "asyncio.Future[ApprovalDecision] | None" = field(default=None, repr=False, compare=False)

    @classmethod
    def from_details(cls, details: ApprovalDetails) -> "ApprovalRequest":
        return cls(
            type=details.type,
            requested_by=details.user,
            context=details.context,
            metadata=dict(details.metadata),
        )

    @property
    def decision(self) -> "asyncio.Future[ApprovalDecision]":
        # Created lazily so requests can be built outside a running loop.
        if self._decision is None:
            self._decision = asyncio.get_running_loop().create_future()
        return self._decision

    @property
    def is_settled(self) -> bool:
        return self._decision is not None and self._decision.done()

    def settle(self, decision: ApprovalDecision) -> bool:
        if self.is_settled:
            return False
        self.decision.set_result(decision)
        return True


class ApprovalQueue:
    """Pending approval requests, in the order they were raised."""

    def __init__(self) -> None:
        self._pending: Dict[str, ApprovalRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, request: ApprovalRequest) -> None:
        self._pending[request.id] = request

    def discard(self, request_id: str) -> None:
        """Drop a request whose caller stopped waiting, leaving it unsettled."""
        self._pending.pop(request_id, None)

    def pending(self) -> List[ApprovalRequest]:
        return list(self._pending.values())

    def resolve(self, request_id: str) -> ApprovalRequest | None:
        return self._settle(request_id, ApprovalDecision.APPROVED)

    def reject(
        self, request_id: str, decision: ApprovalDecision = ApprovalDecision.DENIED
    ) -> ApprovalRequest | None:
        if decision is ApprovalDecision.APPROVED:
            raise ValueError("reject() cannot approve a request; use resolve()")
        return self._settle(request_id, decision)

    def clear(self) -> List[ApprovalRequest]:
        dropped = []
        for request_id in list(self._pending):
            request = self.reject(request_id)
            if request is not None:
                dropped.append(request)
        return dropped

    def expire_older_than(self, ttl: timedelta, now: datetime | None = None) -> List[ApprovalRequest]:
        now = now or _utcnow()
        expired = []
        for request in self.pending():
            if now - request.requested_at >= ttl:
                self._settle(request.id, ApprovalDecision.EXPIRED)
                expired.append(request)
        return expired

    def _settle(self, request_id: str, decision: ApprovalDecision) -> ApprovalRequest | None:
        request = self._pending.pop(request_id, None)
        if request is None or not request.settle(decision):
            return None
        logger.info("Approval request %s %s (%s)", request.id, decision.value, request.type)
        return request


@dataclass
class ApprovalOutcome:
    approved: bool
    result: Any = None
    error: BaseException | None = None
    request_id: str | None = None
    decision: ApprovalDecision | None = None


class ApprovalGate:
    def __init__(self, queue: ApprovalQueue, notifier: "OwnerNotifier"):
        self._queue = queue
        self._notifier = notifier

    async def execute_with_approval(
        self,
        details: ApprovalDetails,
        operation: Operation,
    ) -> ApprovalOutcome:
        """
        Park the operation until the owner decides.

        Approved  -> operation runs once; its error is returned, not raised.
        Denied    -> operation never runs.
        Expired   -> same as denied.
        """
        request = ApprovalRequest.from_details(details)
        decision_future = request.decision
        self._queue.add(request)
        logger.info(
            "Approval requested: id=%s type=%s user=%s context=%s",
            request.id, request.type, request.requested_by, request.context,
        )

        try:
            try:
                await self._notifier.notify_approval_request(request)
            except Exception as e:  # noqa: BLE001
                logger.error("Failed to notify owner about approval request %s: %s", request.id, e)
            decision = await decision_future
        except asyncio.CancelledError:
            self._queue.discard(request.id)
            logger.info("Approval request %s abandoned: caller cancelled", request.id)
            raise

        if decision is not ApprovalDecision.APPROVED:
            return ApprovalOutcome(approved=False, request_id=request.id, decision=decision)

        try:
            result = await operation()
        except Exception as e:  # noqa: BLE001
            logger.error("Approved operation %s failed: %s", request.id, e)
            return ApprovalOutcome(approved=True, error=e, request_id=request.id, decision=decision)
        return ApprovalOutcome(approved=True, result=result, request_id=request.id, decision=decision)
