"""
Owner-only /circuitbreaker slash commands.

Subcommands map onto BreakerManager: approve, deny, list, status, reset, plus
`test`, which pushes a no-op through the approval gate to exercise the flow.
The reply text is built by plain functions so it can be checked without a
Discord connection.
"""

from __future__ import annotations

import logging
import math
from typing import Awaitable, Callable, Collection

import discord
from discord import app_commands

from bot.resilience import (
    ApprovalDetails,
    BreakerManager,
    ResilienceGateway,
    RetryPolicy,
    backoff_schedule,
)


MAX_LISTED = 10


# ── Reply builders ─────────────────────────────────────────────────────────────

def approve_reply(manager: BreakerManager, request_id: str) -> str:
    if manager.approve_request(request_id) is None:
        return f"❌ Failed to approve `{request_id}`: request not found or already resolved"
    return f"✅ Approved operation with ID: `{request_id}`"


def deny_reply(manager: BreakerManager, request_id: str) -> str:
    if manager.deny_request(request_id) is None:
        return f"❌ Failed to deny `{request_id}`: request not found or already resolved"
    return f"🚫 Denied operation with ID: `{request_id}`"


def list_reply(manager: BreakerManager) -> str:
    pending = manager.get_pending_requests()
    if not pending:
        return "No pending approvals."
    blocks = [
        f"**ID:** `{p.id}`\n"
        f"Type: {p.type}\n"
        f"User: {p.requested_by or 'N/A'}\n"
        f"Context: {p.context or ''}\n"
        f"Requested: <t:{int(p.requested_at.timestamp())}:R>"
        for p in pending[:MAX_LISTED]
    ]
    if len(pending) > MAX_LISTED:
        blocks.append(f"…and {len(pending) - MAX_LISTED} more")
    return "\n\n".join(blocks)


def status_reply(manager: BreakerManager, policy: RetryPolicy) -> str:
    status = manager.status(policy.breaker_timeout_ms)
    if status["is_open"]:
        state = f"🔴 **Open** (retry in {math.ceil(status['retry_after_ms'] / 1000)}s)"
    else:
        state = "🟢 **Closed**"
    delays = backoff_schedule(policy.max_retries, policy.initial_backoff_ms, policy.max_backoff_ms)
    return "\n".join([
        f"Circuit breaker: {state}",
        f"Consecutive failures: {status['failure_count']}/{policy.breaker_limit}",
        f"Pending approvals: {status['pending_approvals']}",
        f"Retries: {policy.max_retries} (backoff {' → '.join(f'{d:.0f}ms' for d in delays) or 'none'})",
    ])


def reset_reply(manager: BreakerManager) -> str:
    pending = len(manager.get_pending_requests())
    manager.reset()
    return f"🔄 Circuit breaker reset. {pending} pending approval(s) denied."


async def approval_test(gateway: ResilienceGateway, user: str) -> str:
    details = ApprovalDetails(type="debug", user=user, context="Debug circuit breaker test")

    async def _noop() -> str:
        return "ok"

    outcome = await gateway.execute_with_approval(details, _noop)
    if outcome.approved:
        return "✅ Debug action approved by owner."
    return f"🚫 Debug action {outcome.decision.value if outcome.decision else 'denied'} by owner."


# ── Registration ──────────────────────────────────────────────────────────────

def register_admin_commands(
    tree: app_commands.CommandTree,
    gateway: ResilienceGateway,
    owner_ids: Collection[int],
    on_reset: Callable[[], Awaitable[None]] | None = None,
) -> app_commands.Group:
    """
    Add the /circuitbreaker group to `tree`.

    on_reset is awaited after an owner reset, e.g. to clear a degraded presence.
    """
    group = app_commands.Group(
        name="circuitbreaker",
        description="Owner-only: manage circuit breaker approvals and status",
    )

    async def _guard(interaction: discord.Interaction) -> bool:
        if interaction.user.id in owner_ids:
            return True
        await interaction.response.send_message("Owner only.", ephemeral=True)
        return False

    @group.command(name="approve", description="Approve a pending operation")
    @app_commands.describe(id="The approval ID to approve")
    async def approve(interaction: discord.Interaction, id: str) -> None:
        if await _guard(interaction):
            await interaction.response.send_message(approve_reply(gateway.manager, id), ephemeral=True)

    @group.command(name="deny", description="Deny a pending operation")
    @app_commands.describe(id="The approval ID to deny")
    async def deny(interaction: discord.Interaction, id: str) -> None:
        if await _guard(interaction):
            await interaction.response.send_message(deny_reply(gateway.manager, id), ephemeral=True)

    @group.command(name="list", description="List all pending approval requests")
    async def list_(interaction: discord.Interaction) -> None:
        if await _guard(interaction):
            await interaction.response.send_message(list_reply(gateway.manager), ephemeral=True)

    @group.command(name="status", description="Check the circuit breaker status")
    async def status(interaction: discord.Interaction) -> None:
        if await _guard(interaction):
            await interaction.response.send_message(
                status_reply(gateway.manager, gateway.policy_for("chat")), ephemeral=True
            )

    @group.command(name="reset", description="Close the breaker and drop pending approvals")
    async def reset(interaction: discord.Interaction) -> None:
        if await _guard(interaction):
            reply = reset_reply(gateway.manager)
            logging.info("Circuit breaker reset by %s", interaction.user.id)
            await interaction.response.send_message(reply, ephemeral=True)
            if on_reset is not None:
                await on_reset()

    @group.command(name="test", description="Demo the owner approval flow")
    async def test(interaction: discord.Interaction) -> None:
        if not await _guard(interaction):
            return
        await interaction.response.send_message(
            "Approval requested. Waiting for the owner's decision…", ephemeral=True
        )
        reply = await approval_test(gateway, str(interaction.user))
        try:
            await interaction.followup.send(reply, ephemeral=True)
        except discord.HTTPException as e:
            # Interaction tokens expire after 15 minutes.
            logging.warning("Could not deliver approval test result: %s", e)

    tree.add_command(group)
    return group
