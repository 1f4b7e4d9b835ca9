"""
bot/llm/ollama_service.py

Ollama chat runner. Every request goes through the resilience gateway under
the "ollama" call site, so a dead Ollama host trips the shared breaker
instead of hanging each Discord reply.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List

from dotenv import load_dotenv
from ollama import AsyncClient

from bot.resilience import ResilienceGateway

from .errors import LLMEmptyResponseError

CALL_SITE = "ollama"


def _flatten_content(messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Ollama only takes plain strings; keep the text parts of multi-part content."""
    flat = []
    for m in messages:
        content = m.get("content")
        if isinstance(content, list):
            content = " ".join(c.get("text", "") for c in content if c.get("type") == "text")
        flat.append({"role": m["role"], "content": content or ""})
    return flat


class OllamaService:
    def __init__(self, host: str, gateway: ResilienceGateway, client: AsyncClient | None = None):
        """
        host    — Ollama server URL
        gateway — shared resilience gateway guarding the chat call
        client  — pre-built AsyncClient (tests); built from host otherwise
        """
        self.gateway = gateway
        if client is None:
            load_dotenv()
            api_key = os.getenv("OLLAMA_API_KEY")
            headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
            client = AsyncClient(host=host, headers=headers)
        self.client = client

    async def run(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        think: bool = False,
    ) -> Dict[str, Any]:
        ollama_messages = _flatten_content(messages)

        async def _chat():
            response = await self.client.chat(model=model, messages=ollama_messages, think=think)
            if not (response.message.content or "").strip():
                raise LLMEmptyResponseError(f"Ollama model '{model}' returned an empty response")
            return response

        response = await self.gateway.run(_chat, call_site=CALL_SITE)
        logging.info(
            "OllamaService: model=%s content_len=%d",
            model,
            len(response.message.content or ""),
        )
        return {
            "content": response.message.content or "",
            "thinking": getattr(response.message, "thinking", None),
        }
