from __future__ import annotations

import discord

MAX_DISCORD_MESSAGE = 2000


class DiscordNotificationChannels:
    """
    Owner notification channels backed by Discord.

    primary   — DM to the owner
    secondary — post in the alert channel, mentioning the owner
    Either raises when it cannot deliver, so OwnerNotifier moves on.
    """

    def __init__(self, client: discord.Client, owner_id: int | None, channel_id: int | None):
        self.client = client
        self.owner_id = owner_id
        self.channel_id = channel_id

    async def notify_primary(self, message: str) -> None:
        if not self.owner_id:
            raise LookupError("No owner_id configured")
        user = self.client.get_user(self.owner_id) or await self.client.fetch_user(self.owner_id)
        await user.send(message[:MAX_DISCORD_MESSAGE])

    async def notify_secondary(self, message: str) -> None:
        if not self.channel_id:
            raise LookupError("No alert_channel_id configured")
        channel = self.client.get_channel(self.channel_id) or await self.client.fetch_channel(self.channel_id)
        mention = f"<@{self.owner_id}> " if self.owner_id else ""
        await channel.send((mention + message)[:MAX_DISCORD_MESSAGE])
