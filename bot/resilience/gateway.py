"""
bot/resilience/gateway.py

Single entry point for every outbound call to an unreliable API.

One ResilienceGateway is built at start-up and handed to each call site; it
owns the only breaker state and approval queue in the process, so the retry
executor, the approval gate and the admin commands all see the same truth.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Mapping

from .approval import ApprovalGate, ApprovalOutcome, ApprovalQueue, ApprovalRequest
from .breaker import CircuitBreakerState
from .errors import ApprovalDeniedError
from .executor import RetryExecutor, Sleep
from .manager import BreakerManager
from .notifier import OwnerNotifier
from .policy import ApprovalDetails, RetryPolicy


logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class ResilienceGateway:
    def __init__(
        self,
        notifier: OwnerNotifier | None = None,
        *,
        default_policy: RetryPolicy | None = None,
        policies: Mapping[str, RetryPolicy] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.notifier = notifier or OwnerNotifier()
        self.default_policy = default_policy or RetryPolicy()
        self.policies = dict(policies or {})

        self.state = CircuitBreakerState(clock=clock)
        self.queue = ApprovalQueue()
        self.manager = BreakerManager(self.state, self.queue, self.notifier)
        self.gate = ApprovalGate(self.queue, self.notifier)
        self.executor = RetryExecutor(self.state, self.manager, sleep=sleep)

    def policy_for(self, call_site: str | None) -> RetryPolicy:
        if call_site is None:
            return self.default_policy
        return self.policies.get(call_site, self.default_policy)

    async def run(
        self,
        operation: Operation,
        policy: RetryPolicy | None = None,
        *,
        call_site: str | None = None,
    ) -> Any:
        """
        Run `operation` under `policy` (or the named call site's policy).

        Approval-gated calls are checked against the breaker, then parked until
        the owner decides; the approved operation runs once, without retries.
        """
        policy = policy or self.policy_for(call_site)
        if not policy.require_approval:
            return await self.executor.run(operation, policy)

        self.executor.ensure_closed(policy)
        logger.info("Requesting owner approval before execution (%s)", call_site or policy.approval_details.type)
        outcome = await self.gate.execute_with_approval(policy.approval_details, operation)
        if not outcome.approved:
            reason = outcome.decision.value if outcome.decision else "denied"
            raise ApprovalDeniedError(outcome.request_id, reason)
        if outcome.error is not None:
            raise outcome.error
        return outcome.result

    async def execute_with_approval(self, details: ApprovalDetails, operation: Operation) -> ApprovalOutcome:
        return await self.gate.execute_with_approval(details, operation)

    def expire_stale_approvals(self, ttl_seconds: float, now: datetime | None = None) -> List[ApprovalRequest]:
        if ttl_seconds <= 0:
            return []
        expired = self.queue.expire_older_than(timedelta(seconds=ttl_seconds), now)
        if expired:
            logger.info("Expired %d approval request(s) older than %ss", len(expired), ttl_seconds)
        return expired
