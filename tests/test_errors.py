"""Retryability classification and the user/admin facing error messages."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import ollama
import openai
import pytest

from bot.discord.errors import notify_admin_error
from bot.llm.errors import format_user_friendly_error, parse_error_message
from bot.resilience import (
    ApprovalDeniedError,
    BreakerOpenedJustNowError,
    BreakerOpenError,
    OwnerNotifier,
    error_status,
    is_non_retryable,
)

from conftest import FakeChannels, UpstreamError


REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def openai_error(cls, status: int, message: str = "failed", body=None):
    return cls(message, response=httpx.Response(status, request=REQUEST), body=body)


class TestClassification:
    def test_openai_auth_error(self) -> None:
        error = openai_error(openai.AuthenticationError, 401, "Incorrect API key provided")
        assert error_status(error) == 401
        assert is_non_retryable(error)

    def test_openai_rate_limit_is_retryable(self) -> None:
        error = openai_error(openai.RateLimitError, 429)
        assert error_status(error) == 429
        assert not is_non_retryable(error)

    def test_openai_server_error_is_retryable(self) -> None:
        assert not is_non_retryable(openai_error(openai.InternalServerError, 500))

    def test_httpx_forbidden(self) -> None:
        response = httpx.Response(403, request=httpx.Request("GET", "https://cdn.discordapp.com/a.png"))
        error = httpx.HTTPStatusError("forbidden", request=response.request, response=response)
        assert error_status(error) == 403
        assert is_non_retryable(error)

    def test_ollama_response_error(self) -> None:
        assert error_status(ollama.ResponseError("model not found", 404)) == 404
        assert not is_non_retryable(ollama.ResponseError("model not found", 404))
        assert is_non_retryable(ollama.ResponseError("unauthorized", 401))

    @pytest.mark.parametrize(
        "message",
        ["Your request was rejected as a result of our safety system", "Violates our Content Policy"],
    )
    def test_content_policy_rejections(self, message: str) -> None:
        assert is_non_retryable(UpstreamError(400, message))

    def test_plain_bad_request_is_retryable(self) -> None:
        assert not is_non_retryable(UpstreamError(400, "context length exceeded"))

    def test_invalid_request_code(self) -> None:
        assert is_non_retryable(UpstreamError(422, "bad", code="invalid_request_error"))

    @pytest.mark.parametrize("error", [asyncio.TimeoutError(), ConnectionError("reset"), ValueError("x")])
    def test_errors_without_status_are_retryable(self, error: BaseException) -> None:
        assert error_status(error) is None
        assert not is_non_retryable(error)


class TestMessages:
    def test_breaker_open(self) -> None:
        error = BreakerOpenError(retry_after_ms=4100)
        assert str(error) == "Circuit breaker is open. Try again in 5s"
        assert "5s" in parse_error_message(error)
        assert "暫停" in format_user_friendly_error(error)

    def test_breaker_tripped_includes_cause(self) -> None:
        error = BreakerOpenedJustNowError(openai_error(openai.RateLimitError, 429), failure_count=3)
        admin, user = parse_error_message(error), format_user_friendly_error(error)
        assert "3 failures" in admin
        assert "Rate Limited" in admin
        assert "暫停" in user

    def test_denied(self) -> None:
        error = ApprovalDeniedError("abc123", "expired")
        assert "abc123" in parse_error_message(error)
        assert "expired" in parse_error_message(error)
        assert format_user_friendly_error(error) == "這個操作未獲管理員核准。"

    def test_status_based_messages(self) -> None:
        assert parse_error_message(openai_error(openai.AuthenticationError, 401)).startswith("❌ Authentication")
        assert format_user_friendly_error(UpstreamError(404, "gone")) == "找不到指定的模型或資源。"

    def test_unknown_error_keeps_first_line(self) -> None:
        assert parse_error_message(ValueError("first\nsecond")) == "❌ ValueError: first"


class TestAdminNotification:
    @pytest.mark.asyncio
    async def test_sends_formatted_error(self) -> None:
        channels = FakeChannels()
        await notify_admin_error(OwnerNotifier(channels), UpstreamError(500, "boom"), "on_message")
        assert len(channels.primary) == 1
        assert "Context: on_message" in channels.primary[0]
        assert "boom" in channels.primary[0]

    @pytest.mark.asyncio
    async def test_breaker_errors_are_not_repeated(self) -> None:
        notifier = OwnerNotifier(FakeChannels())
        notifier.notify = AsyncMock()
        await notify_admin_error(notifier, BreakerOpenError(1000), "on_message")
        notifier.notify.assert_not_awaited()
