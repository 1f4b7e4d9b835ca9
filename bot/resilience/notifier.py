"""
bot/resilience/notifier.py

Owner notifications: try the private channel (DM) first, fall back to the
shared channel. Losing a notification never fails the guarded call, so every
failure here is logged and swallowed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .approval import ApprovalRequest


logger = logging.getLogger(__name__)

TYPE_LABELS = {
    "data_write": ("💾", "Data Write Operation"),
    "command_execution": ("⚡", "Command Execution"),
    "api_call": ("🌐", "External API Call"),
    "system_change": ("⚙️", "System Configuration Change"),
    "plugin_action": ("🔌", "Plugin Action"),
}


class NotificationChannels(Protocol):
    async def notify_primary(self, message: str) -> None: ...

    async def notify_secondary(self, message: str) -> None: ...


class LoggingChannels:
    """Channel pair that only writes to the log; used when no owner is configured."""

    async def notify_primary(self, message: str) -> None:
        logger.warning("Owner notification: %s", message)

    async def notify_secondary(self, message: str) -> None:
        logger.warning("Owner notification (fallback): %s", message)


# ── Message rendering ─────────────────────────────────────────────────────────

def format_approval_message(request: "ApprovalRequest") -> str:
    emoji, label = TYPE_LABELS.get(request.type, ("🚨", request.type))
    lines = [
        f"{emoji} **Circuit Breaker Approval Needed**",
        f"**Type:** {label}",
        f"**User:** {request.requested_by or 'N/A'}",
        f"**Context:** {request.context or 'No context provided'}",
        f"**Requested:** <t:{int(request.requested_at.timestamp())}:R>",
        f"**ID:** `{request.id}`",
    ]
    if request.metadata:
        lines.append("**Details:**")
        lines.extend(f"• {k}: {v}" for k, v in request.metadata.items())
    lines += [
        "",
        f"**Approve:** `/circuitbreaker approve id:{request.id}`",
        f"**Deny:** `/circuitbreaker deny id:{request.id}`",
        "**View All:** `/circuitbreaker list`",
    ]
    return "\n".join(lines)


def format_breaker_message(reason: str) -> str:
    return (
        "🚨 **Circuit breaker triggered!**\n"
        f"Reason: {reason}\n\n"
        "Use `/circuitbreaker reset` once the issue is resolved (e.g. after topping up API credits)."
    )


# ── Orchestrator ──────────────────────────────────────────────────────────────

class OwnerNotifier:
    def __init__(self, channels: NotificationChannels | None = None):
        self.channels = channels or LoggingChannels()

    async def notify(self, message: str) -> bool:
        """Deliver `message`; returns False when both channels failed."""
        try:
            await self.channels.notify_primary(message)
            return True
        except Exception as e:  # noqa: BLE001
            logger.warning("Primary owner notification failed, falling back: %s", e)

        try:
            await self.channels.notify_secondary(message)
            return True
        except Exception as e:  # noqa: BLE001
            logger.error("Fallback owner notification failed: %s", e)
        return False

    async def notify_approval_request(self, request: "ApprovalRequest") -> bool:
        return await self.notify(format_approval_message(request))

    async def notify_breaker_open(self, reason: str) -> bool:
        return await self.notify(format_breaker_message(reason))
