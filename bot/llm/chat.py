"""
bot/llm/chat.py

Chat completions for the primary model and its fallbacks.

Each model attempt is one guarded operation: the gateway retries it with
backoff and counts its failures against the shared breaker. Once the breaker
is involved (already open, or tripped by this attempt) the fallback chain
stops, because every fallback would be rejected by the same breaker.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

from openai import AsyncOpenAI

from bot.resilience import ResilienceGateway, ResilienceError

from .errors import LLMEmptyResponseError, ModelConfigError, parse_error_message
from .ollama_service import OllamaService

CALL_SITE = "chat"
RESPONSE_TIMEOUT_SECONDS = 60  # per attempt; a timeout counts as a retryable failure
NON_API_PARAMS = {"system_prompt", "think", "fallback_models"}


def strip_thinking(text: str) -> str:
    return re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()


def format_system_prompt(prompt: str, accept_usernames: bool) -> str:
    now = datetime.now().astimezone()
    prompt = prompt.replace("{date}", now.strftime("%B %d %Y")).replace("{time}", now.strftime("%H:%M:%S %Z%z")).strip()
    if accept_usernames:
        prompt += "\n\nUser's names are their Discord IDs and should be typed as '<@ID>'."
    return prompt


def build_openai_client(provider_cfg: dict) -> AsyncOpenAI:
    # The gateway owns retries; the SDK's own retry loop would hide failures from the breaker.
    return AsyncOpenAI(
        base_url=provider_cfg["base_url"],
        api_key=provider_cfg.get("api_key", "sk-no-key-required"),
        max_retries=0,
    )


def build_extra_body(provider_cfg: dict, model_params: Any, exclude: set[str] | None = None) -> dict | None:
    base = provider_cfg.get("extra_body") or {}
    params = model_params if isinstance(model_params, dict) else {}
    if exclude:
        params = {k: v for k, v in params.items() if k not in exclude}
    merged = base | params
    return merged if merged else None


async def stream_openai(client: AsyncOpenAI, model: str, messages: list, **kwargs) -> str:
    chunks = []
    async for chunk in await client.chat.completions.create(model=model, messages=messages, stream=True, **kwargs):
        if choice := (chunk.choices[0] if chunk.choices else None):
            chunks.append(choice.delta.content or "")
            if choice.finish_reason:
                break
    return "".join(chunks)


@dataclass
class ModelTarget:
    name: str
    provider: str
    model: str
    provider_cfg: dict[str, Any]
    params: dict[str, Any]


@dataclass
class ChatResult:
    text: str
    model: str
    used_fallback: bool = False


def resolve_model(config: dict[str, Any], name: str) -> ModelTarget:
    provider, _, model = name.removesuffix(":vision").partition("/")
    if not model:
        raise ModelConfigError(f"Model '{name}' must look like 'provider/model'")
    provider_cfg = config.get("providers", {}).get(provider)
    if provider_cfg is None:
        raise ModelConfigError(f"Model '{name}' refers to unknown provider '{provider}'")
    params = config.get("models", {}).get(name)
    return ModelTarget(name, provider, model, provider_cfg, params if isinstance(params, dict) else {})


def model_chain(config: dict[str, Any], primary: str) -> List[str]:
    """Primary model, then its own fallbacks, then the global ones; blanks and repeats dropped."""
    params = config.get("models", {}).get(primary)
    own = (params or {}).get("fallback_models", []) if isinstance(params, dict) else []
    chain: List[str] = []
    for name in [primary, *(own or []), *(config.get("fallback_models") or [])]:
        if name and name.strip() and name not in chain:
            chain.append(name)
    return chain


class ChatRunner:
    def __init__(
        self,
        config: dict[str, Any],
        gateway: ResilienceGateway,
        client_factory: Callable[[dict], AsyncOpenAI] = build_openai_client,
        ollama_factory: Callable[[str, ResilienceGateway], OllamaService] = OllamaService,
    ):
        self.config = config
        self.gateway = gateway
        self._client_factory = client_factory
        self._ollama_factory = ollama_factory

    def system_prompt(self, target: ModelTarget, accept_usernames: bool) -> str:
        prompt = target.params.get("system_prompt") or self.config.get("system_prompt") or ""
        return format_system_prompt(prompt, accept_usernames) if prompt else ""

    async def complete(self, model_name: str, messages: List[dict], accept_usernames: bool = False) -> ChatResult:
        """
        Run the model chain until one model answers.

        Raises the gateway's breaker/approval errors straight away, otherwise
        the last model's error once every model has failed.
        """
        last_error: Optional[BaseException] = None
        chain = model_chain(self.config, model_name)

        for idx, name in enumerate(chain):
            is_primary = idx == 0
            try:
                target = resolve_model(self.config, name)
                api_messages = list(messages)
                if sys_prompt := self.system_prompt(target, accept_usernames):
                    api_messages.insert(0, {"role": "system", "content": sys_prompt})
                text = strip_thinking(await self._complete_one(target, api_messages))
            except ResilienceError:
                raise
            except Exception as e:  # noqa: BLE001
                last_error = e
                logging.warning(
                    "%s model '%s' failed: %s%s",
                    "Primary" if is_primary else "Fallback",
                    name,
                    parse_error_message(e),
                    " Trying next fallback..." if idx < len(chain) - 1 else " No more fallbacks.",
                )
                continue

            if not is_primary:
                logging.info("Fallback '%s' succeeded", name)
            return ChatResult(text=text, model=name, used_fallback=not is_primary)

        raise last_error or ModelConfigError("No models configured")

    async def _complete_one(self, target: ModelTarget, messages: List[dict]) -> str:
        if target.provider == "ollama":
            service = self._ollama_factory(target.provider_cfg["base_url"], self.gateway)
            result = await service.run(messages, target.model, think=bool(target.params.get("think", False)))
            return result["content"]

        client = self._client_factory(target.provider_cfg)
        extra_body = build_extra_body(target.provider_cfg, target.params, exclude=NON_API_PARAMS)

        async def _attempt() -> str:
            text = await asyncio.wait_for(
                stream_openai(
                    client, target.model, messages,
                    extra_headers=target.provider_cfg.get("extra_headers"),
                    extra_query=target.provider_cfg.get("extra_query"),
                    extra_body=extra_body,
                ),
                timeout=RESPONSE_TIMEOUT_SECONDS,
            )
            if not text.strip():
                raise LLMEmptyResponseError(f"Model '{target.name}' returned an empty response")
            return text

        return await self.gateway.run(_attempt, call_site=CALL_SITE)
