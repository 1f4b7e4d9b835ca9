from __future__ import annotations

from datetime import datetime
import logging

import discord

from bot.llm.errors import is_breaker_error, parse_error_message
from bot.resilience import OwnerNotifier

COMMAND_FAILED_REPLY = "指令執行時發生錯誤，已通知管理員。"


def format_admin_error(error: BaseException, context: str = "") -> str:
    return (
        "🤖 **Bot Error Notification**\n"
        f"⏰ Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"📝 Context: {context}\n\nError: {parse_error_message(error)}"
    )


async def notify_admin_error(notifier: OwnerNotifier, error: BaseException, context: str = "") -> None:
    """
    Tell the owner about an unexpected failure (DM, then alert channel).

    Breaker errors are skipped: the breaker already alerted the owner when it
    opened, and every blocked call afterwards would repeat the same news.
    """
    if is_breaker_error(error):
        logging.info("Skipping admin notification for breaker error: %s", error)
        return
    try:
        await notifier.notify(format_admin_error(error, context))
    except Exception as e:  # noqa: BLE001
        logging.warning("Failed to notify admins: %s", e)


async def handle_app_command_error(
    interaction: discord.Interaction,
    error: Exception,
    notifier: OwnerNotifier,
) -> None:
    command = getattr(interaction.command, "name", "unknown")
    logging.exception("Slash command /%s failed: %s", command, error)
    await notify_admin_error(notifier, error, f"App command error: {command}")

    send = interaction.followup.send if interaction.response.is_done() else interaction.response.send_message
    try:
        await send(COMMAND_FAILED_REPLY, ephemeral=True)
    except discord.HTTPException as e:
        logging.warning("Could not report command error to user: %s", e)
