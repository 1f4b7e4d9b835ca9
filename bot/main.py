"""
Entrypoint: `python -m bot.main`.

Loads config.yaml (+ .env), builds the Discord client (which builds the
resilience gateway) and runs it until interrupted.
"""

import asyncio
import logging
import os
from typing import Any

from bot.config.loader import get_config
from bot.discord.client import build_bot


def setup_logging() -> None:
    level = logging.DEBUG if os.environ.get("DEBUG") else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s: %(message)s")
    if level == logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.DEBUG)


async def run_bot(config: dict[str, Any] | None = None) -> None:
    config = config or get_config()
    logging.info(f"🚀 Bot starting | models: {list(config['models'].keys())} | providers: {list(config['providers'].keys())}")
    discord_bot = build_bot(config)
    async with discord_bot:
        await discord_bot.start(config["bot_token"])


def main() -> None:
    setup_logging()
    try:
        asyncio.run(run_bot())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
