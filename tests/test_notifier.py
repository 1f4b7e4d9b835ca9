"""Owner notification fallback and the Discord-backed channels."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from bot.discord.notifier import DiscordNotificationChannels
from bot.resilience import ApprovalRequest, LoggingChannels, OwnerNotifier
from bot.resilience.notifier import format_approval_message, format_breaker_message

from conftest import FakeChannels


class TestOwnerNotifier:
    @pytest.mark.asyncio
    async def test_primary_first(self) -> None:
        channels = FakeChannels()
        assert await OwnerNotifier(channels).notify("hello") is True
        assert channels.primary == ["hello"]
        assert channels.secondary == []

    @pytest.mark.asyncio
    async def test_falls_back_to_secondary(self) -> None:
        channels = FakeChannels(fail_primary=True)
        assert await OwnerNotifier(channels).notify("hello") is True
        assert channels.secondary == ["hello"]

    @pytest.mark.asyncio
    async def test_both_failing_is_not_an_error(self) -> None:
        channels = FakeChannels(fail_primary=True, fail_secondary=True)
        assert await OwnerNotifier(channels).notify("hello") is False

    @pytest.mark.asyncio
    async def test_defaults_to_logging_channels(self) -> None:
        notifier = OwnerNotifier()
        assert isinstance(notifier.channels, LoggingChannels)
        assert await notifier.notify_breaker_open("credits exhausted") is True


class TestMessages:
    def test_approval_message(self) -> None:
        request = ApprovalRequest(type="api_call", requested_by="bob", context="weather lookup", metadata={"city": "Oslo"})
        text = format_approval_message(request)
        assert "External API Call" in text
        assert "bob" in text
        assert "weather lookup" in text
        assert "city: Oslo" in text
        assert f"/circuitbreaker approve id:{request.id}" in text
        assert f"/circuitbreaker deny id:{request.id}" in text

    def test_unknown_type_is_shown_verbatim(self) -> None:
        text = format_approval_message(ApprovalRequest(type="debug"))
        assert "**Type:** debug" in text
        assert "N/A" in text

    def test_breaker_message(self) -> None:
        assert "Reason: 3 failures" in format_breaker_message("3 failures")


class TestDiscordNotificationChannels:
    @pytest.mark.asyncio
    async def test_dm_to_owner(self) -> None:
        user = MagicMock()
        user.send = AsyncMock()
        client = MagicMock()
        client.get_user.return_value = user

        await DiscordNotificationChannels(client, owner_id=1, channel_id=2).notify_primary("x" * 3000)
        sent = user.send.await_args.args[0]
        assert len(sent) == 2000

    @pytest.mark.asyncio
    async def test_fetches_uncached_owner(self) -> None:
        user = MagicMock()
        user.send = AsyncMock()
        client = MagicMock()
        client.get_user.return_value = None
        client.fetch_user = AsyncMock(return_value=user)

        await DiscordNotificationChannels(client, owner_id=1, channel_id=None).notify_primary("hi")
        client.fetch_user.assert_awaited_once_with(1)
        user.send.assert_awaited_once_with("hi")

    @pytest.mark.asyncio
    async def test_channel_post_mentions_owner(self) -> None:
        channel = MagicMock()
        channel.send = AsyncMock()
        client = MagicMock()
        client.get_channel.return_value = channel

        await DiscordNotificationChannels(client, owner_id=42, channel_id=7).notify_secondary("tripped")
        channel.send.assert_awaited_once_with("<@42> tripped")

    @pytest.mark.asyncio
    async def test_missing_ids_raise(self) -> None:
        channels = DiscordNotificationChannels(MagicMock(), owner_id=None, channel_id=None)
        with pytest.raises(LookupError):
            await channels.notify_primary("x")
        with pytest.raises(LookupError):
            await channels.notify_secondary("x")

    @pytest.mark.asyncio
    async def test_dm_failure_falls_back_to_channel(self) -> None:
        user = MagicMock()
        user.send = AsyncMock(side_effect=RuntimeError("Cannot send messages to this user"))
        channel = MagicMock()
        channel.send = AsyncMock()
        client = MagicMock()
        client.get_user.return_value = user
        client.get_channel.return_value = channel

        notifier = OwnerNotifier(DiscordNotificationChannels(client, owner_id=42, channel_id=7))
        assert await notifier.notify("alert") is True
        channel.send.assert_awaited_once_with("<@42> alert")
