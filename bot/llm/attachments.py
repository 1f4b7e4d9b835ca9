from __future__ import annotations

import asyncio
import logging
from base64 import b64encode
from dataclasses import dataclass, field
from typing import Any, Iterable, List

import httpx

from bot.resilience import ResilienceGateway, ResilienceError

CALL_SITE = "attachments"
SUPPORTED_PREFIXES = ("text", "image")


@dataclass
class FetchedAttachments:
    texts: List[str] = field(default_factory=list)
    images: List[dict[str, Any]] = field(default_factory=list)
    failed: int = 0


def is_supported(content_type: str | None) -> bool:
    return bool(content_type) and content_type.startswith(SUPPORTED_PREFIXES)


async def download(http: httpx.AsyncClient, gateway: ResilienceGateway, url: str) -> httpx.Response:
    async def _get() -> httpx.Response:
        response = await http.get(url)
        response.raise_for_status()
        return response

    return await gateway.run(_get, call_site=CALL_SITE)


async def fetch_attachments(
    http: httpx.AsyncClient,
    gateway: ResilienceGateway,
    attachments: Iterable[Any],
) -> FetchedAttachments:
    """
    Download text/image attachments (anything with `url` and `content_type`).

    A failed download only drops that attachment; breaker errors propagate
    so the caller can stop before calling the model.
    """
    good = [a for a in attachments if is_supported(a.content_type)]
    responses = await asyncio.gather(
        *[download(http, gateway, a.url) for a in good],
        return_exceptions=True,
    )

    fetched = FetchedAttachments()
    for att, resp in zip(good, responses):
        if isinstance(resp, ResilienceError):
            raise resp
        if isinstance(resp, Exception):
            logging.warning("Attachment download failed (%s): %s", att.url, resp)
            fetched.failed += 1
        elif att.content_type.startswith("text"):
            fetched.texts.append(resp.text)
        else:
            fetched.images.append(
                dict(type="image_url", image_url=dict(url=f"data:{att.content_type};base64,{b64encode(resp.content).decode()}"))
            )
    return fetched
