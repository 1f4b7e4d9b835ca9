from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import ollama
import pytest

from bot.llm.ollama_service import OllamaService
from bot.resilience import ResilienceGateway, RetryPolicy

from conftest import FakeClock, RecordingSleep


def reply(content: str, thinking: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(message=SimpleNamespace(content=content, thinking=thinking))


@pytest.fixture
def ollama_gateway(clock: FakeClock, sleeps: RecordingSleep) -> ResilienceGateway:
    return ResilienceGateway(
        policies={"ollama": RetryPolicy(max_retries=2, breaker_limit=10)},
        clock=clock,
        sleep=sleeps,
    )


@pytest.mark.asyncio
async def test_flattens_multipart_content(ollama_gateway: ResilienceGateway) -> None:
    client = MagicMock()
    client.chat = AsyncMock(return_value=reply("hi", thinking="hmm"))
    service = OllamaService("http://localhost:11434", ollama_gateway, client=client)

    messages = [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": [{"type": "text", "text": "describe"}, {"type": "image_url", "image_url": {"url": "data:"}}]},
    ]
    result = await service.run(messages, "qwen3:14b", think=True)

    assert result == {"content": "hi", "thinking": "hmm"}
    client.chat.assert_awaited_once_with(
        model="qwen3:14b",
        messages=[{"role": "system", "content": "be brief"}, {"role": "user", "content": "describe"}],
        think=True,
    )


@pytest.mark.asyncio
async def test_empty_reply_is_retried(ollama_gateway: ResilienceGateway, sleeps: RecordingSleep) -> None:
    client = MagicMock()
    client.chat = AsyncMock(side_effect=[reply(""), reply("  "), reply("finally")])
    service = OllamaService("http://localhost:11434", ollama_gateway, client=client)

    result = await service.run([{"role": "user", "content": "hi"}], "llama3")
    assert result["content"] == "finally"
    assert client.chat.await_count == 3
    assert sleeps.delays == pytest.approx([0.2, 0.4])


@pytest.mark.asyncio
async def test_unauthorized_is_not_retried(ollama_gateway: ResilienceGateway) -> None:
    client = MagicMock()
    client.chat = AsyncMock(side_effect=ollama.ResponseError("unauthorized", 401))
    service = OllamaService("https://ollama.com", ollama_gateway, client=client)

    with pytest.raises(ollama.ResponseError):
        await service.run([{"role": "user", "content": "hi"}], "llama3")
    assert client.chat.await_count == 1
    assert ollama_gateway.state.failure_count == 0
