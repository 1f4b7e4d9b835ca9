"""
Discord client: slash commands, message handling and background jobs.

Everything that talks to an external API does so through the
ResilienceGateway built in build_gateway(); nothing here keeps its own
retry loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Literal, Optional

import discord
from discord.app_commands import Choice
from discord.ext import commands
import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from bot.config.resilience import ResilienceSettings, load_resilience_settings
from bot.discord.admin_commands import register_admin_commands
from bot.discord.errors import handle_app_command_error, notify_admin_error
from bot.discord.notifier import DiscordNotificationChannels
from bot.llm.attachments import fetch_attachments
from bot.llm.chat import ChatRunner
from bot.llm.errors import format_user_friendly_error
from bot.resilience import OwnerNotifier, ResilienceError, ResilienceGateway
from bot.resilience.policy import BreakerOpenCallback

VISION_MODEL_TAGS = ("claude", "gemini", "gemma", "gpt-4", "gpt-5", "grok-4", "llama", "llava", "mistral", "o3", "o4", "vision", "vl")
PROVIDERS_SUPPORTING_USERNAMES = ("openai", "x-ai")
EMBED_COLOR_COMPLETE = discord.Color.dark_green()
MAX_MESSAGE_NODES = 500
DEGRADED_STATUS = "⚠️ Upstream API trouble, replies paused"


@dataclass
class MsgNode:
    text: Optional[str] = None
    images: list[dict[str, Any]] = field(default_factory=list)
    role: Literal["user", "assistant"] = "assistant"
    user_id: Optional[int] = None
    has_bad_attachments: bool = False
    parent_msg: Optional[discord.Message] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def split_text(text: str, max_len: int) -> list[str]:
    return [text[i:i + max_len] for i in range(0, len(text), max_len)] if text else []


def owner_ids(config: dict[str, Any]) -> set[int]:
    ids = set(config.get("permissions", {}).get("users", {}).get("admin_ids", []))
    if config.get("owner_id"):
        ids.add(config["owner_id"])
    return ids


def is_allowed(config: dict[str, Any], msg: discord.Message) -> bool:
    is_dm = msg.channel.type == discord.ChannelType.private
    perms = config.get("permissions", {})
    users, roles, channels = (perms.get(k, {}) for k in ("users", "roles", "channels"))

    role_ids = {role.id for role in getattr(msg.author, "roles", ())}
    channel_ids = set(filter(None, (msg.channel.id, getattr(msg.channel, "parent_id", None), getattr(msg.channel, "category_id", None))))
    if msg.author.id in owner_ids(config):
        return True

    allowed_uids, blocked_uids = users.get("allowed_ids", []), users.get("blocked_ids", [])
    allowed_rids, blocked_rids = roles.get("allowed_ids", []), roles.get("blocked_ids", [])
    allowed_cids, blocked_cids = channels.get("allowed_ids", []), channels.get("blocked_ids", [])

    allow_all_users = not allowed_uids if is_dm else not allowed_uids and not allowed_rids
    good_user = allow_all_users or msg.author.id in allowed_uids or bool(role_ids & set(allowed_rids))
    bad_user = not good_user or msg.author.id in blocked_uids or bool(role_ids & set(blocked_rids))

    good_channel = config.get("allow_dms", True) if is_dm else not allowed_cids or bool(channel_ids & set(allowed_cids))
    bad_channel = not good_channel or bool(channel_ids & set(blocked_cids))
    return not (bad_user or bad_channel)


def build_gateway(
    config: dict[str, Any],
    client: discord.Client,
    on_breaker_open: BreakerOpenCallback | None = None,
) -> tuple[ResilienceGateway, ResilienceSettings]:
    settings = load_resilience_settings(config)
    channels = DiscordNotificationChannels(client, config.get("owner_id"), config.get("alert_channel_id"))
    gateway = ResilienceGateway(
        OwnerNotifier(channels),
        default_policy=settings.default_policy.with_callback(on_breaker_open),
        policies={name: p.with_callback(on_breaker_open) for name, p in settings.policies.items()},
    )
    return gateway, settings


def build_bot(config: dict[str, Any]) -> commands.Bot:
    intents = discord.Intents.default()
    intents.message_content = True
    intents.dm_messages = True
    status = (config.get("status_message") or "github.com/jakobdylanc/llmcord")[:128]
    discord_bot = commands.Bot(intents=intents, activity=discord.CustomActivity(name=status), command_prefix=None)

    state = {"model": next(iter(config["models"])), "degraded": False}

    async def on_breaker_open(error: BaseException) -> None:
        logging.warning("Breaker opened by: %s", error)
        state["degraded"] = True
        await discord_bot.change_presence(activity=discord.CustomActivity(name=DEGRADED_STATUS))

    gateway, settings = build_gateway(config, discord_bot, on_breaker_open)
    runner = ChatRunner(config, gateway)
    httpx_client = httpx.AsyncClient()
    scheduler = AsyncIOScheduler()
    msg_nodes: dict[int, MsgNode] = {}

    async def restore_presence() -> None:
        if state["degraded"]:
            state["degraded"] = False
            await discord_bot.change_presence(activity=discord.CustomActivity(name=status))

    register_admin_commands(discord_bot.tree, gateway, owner_ids(config), on_reset=restore_presence)

    async def sweep() -> None:
        gateway.expire_stale_approvals(settings.approval_ttl_seconds)
        # The cooldown can run out with no traffic to notice it.
        if state["degraded"] and not gateway.state.check_open(gateway.default_policy.breaker_timeout_ms).blocked:
            await restore_presence()

    # ── Slash commands ──────────────────────────────────────────────────────

    @discord_bot.tree.command(name="model", description="View or switch the current model")
    async def model_command(interaction: discord.Interaction, model: str) -> None:
        if model == state["model"]:
            out = f"Current model: `{state['model']}`"
        elif model not in config["models"]:
            out = f"Unknown model: `{model}`"
        elif interaction.user.id in owner_ids(config):
            state["model"] = model
            out = f"Model switched to: `{model}`"
            logging.info(out)
        else:
            out = "You don't have permission to change the model."
        await interaction.response.send_message(out, ephemeral=(interaction.channel.type == discord.ChannelType.private))

    @model_command.autocomplete("model")
    async def model_autocomplete(interaction: discord.Interaction, curr_str: str) -> list[Choice[str]]:
        curr = state["model"]
        choices = [Choice(name=f"◉ {curr} (current)", value=curr)] if curr_str.lower() in curr.lower() else []
        choices += [Choice(name=f"○ {m}", value=m) for m in config["models"] if m != curr and curr_str.lower() in m.lower()]
        return choices[:25]

    @discord_bot.tree.command(name="clear", description="Clear conversation history and cached messages")
    async def clear_command(interaction: discord.Interaction) -> None:
        msg_nodes.clear()
        await interaction.response.send_message("✅ Conversation history cleared. Starting fresh!", ephemeral=(interaction.channel.type == discord.ChannelType.private))
        logging.info("Cache cleared by %s", interaction.user.id)

    @discord_bot.tree.error
    async def on_app_command_error(interaction: discord.Interaction, error: Exception) -> None:
        await handle_app_command_error(interaction, error, gateway.notifier)

    # ── Events ───────────────────────────────────────────────────────────────

    @discord_bot.event
    async def on_ready() -> None:
        if client_id := config.get("client_id"):
            logging.info(f"\n\nBOT INVITE URL:\nhttps://discord.com/oauth2/authorize?client_id={client_id}&permissions=412317191168&scope=bot\n")
        await discord_bot.tree.sync()
        logging.info(f"Synced {len(discord_bot.tree.get_commands())} slash commands")
        if not scheduler.running:
            scheduler.add_job(
                sweep, "interval", id="resilience_sweep", replace_existing=True,
                seconds=settings.approval_sweep_seconds,
            )
            scheduler.start()
            logging.info("Resilience sweep every %ss (approval ttl %ss, 0 = never expire)", settings.approval_sweep_seconds, settings.approval_ttl_seconds)

    async def build_chain(new_msg: discord.Message, max_messages: int, max_text: int, max_images: int, accept_usernames: bool) -> tuple[list[dict], set[str]]:
        messages, warnings, curr_msg = [], set(), new_msg
        while curr_msg and len(messages) < max_messages:
            node = msg_nodes.setdefault(curr_msg.id, MsgNode())
            async with node.lock:
                if node.text is None:
                    fetched = await fetch_attachments(httpx_client, gateway, curr_msg.attachments)
                    cleaned = curr_msg.content.removeprefix(discord_bot.user.mention).lstrip()
                    node.text = "\n".join(([cleaned] if cleaned else []) + fetched.texts)
                    node.images = fetched.images
                    node.role = "assistant" if curr_msg.author == discord_bot.user else "user"
                    node.user_id = curr_msg.author.id if node.role == "user" else None
                    node.has_bad_attachments = fetched.failed > 0 or len(curr_msg.attachments) > len(fetched.texts) + len(fetched.images) + fetched.failed
                    if ref := curr_msg.reference:
                        try:
                            node.parent_msg = ref.cached_message or await curr_msg.channel.fetch_message(ref.message_id)
                        except (discord.NotFound, discord.HTTPException):
                            logging.exception("Error fetching parent message")
                            warnings.add("⚠️ Couldn't load the whole conversation")

                images = node.images[:max_images]
                content: Any = ([dict(type="text", text=node.text[:max_text])] if node.text[:max_text] else []) + images if images else node.text[:max_text]
                if content:
                    msg = dict(content=content, role=node.role)
                    if accept_usernames and node.user_id:
                        msg["name"] = str(node.user_id)
                    messages.append(msg)

                if len(node.text) > max_text:
                    warnings.add(f"⚠️ Max {max_text:,} characters per message")
                if len(node.images) > max_images:
                    warnings.add(f"⚠️ Max {max_images} image{'s' if max_images != 1 else ''} per message" if max_images > 0 else "⚠️ Can't see images")
                if node.has_bad_attachments:
                    warnings.add("⚠️ Unsupported attachments")
                curr_msg = node.parent_msg
        return messages[::-1], warnings

    @discord_bot.event
    async def on_message(new_msg: discord.Message) -> None:
        is_dm = new_msg.channel.type == discord.ChannelType.private
        if (not is_dm and discord_bot.user not in new_msg.mentions) or new_msg.author.bot:
            return
        if not is_allowed(config, new_msg):
            return

        model_name = state["model"]
        accept_images = any(x in model_name.lower() for x in VISION_MODEL_TAGS)
        accept_usernames = any(model_name.lower().startswith(x) for x in PROVIDERS_SUPPORTING_USERNAMES)
        use_plain = config.get("use_plain_responses", False)
        max_len = 2000 if use_plain else 4096

        try:
            async with new_msg.channel.typing():
                messages, warnings = await build_chain(
                    new_msg,
                    max_messages=config.get("max_messages", 25),
                    max_text=config.get("max_text", 100000),
                    max_images=config.get("max_images", 5) if accept_images else 0,
                    accept_usernames=accept_usernames,
                )
                logging.info(f"Message (uid:{new_msg.author.id}, att:{len(new_msg.attachments)}, len:{len(messages)}): {new_msg.content}")
                result = await runner.complete(model_name, messages, accept_usernames=accept_usernames)
        except ResilienceError as e:
            logging.warning("Reply blocked by resilience gateway: %s", e)
            await _safe_reply(new_msg, format_user_friendly_error(e))
            return
        except Exception as e:  # noqa: BLE001
            logging.exception("All models failed")
            await notify_admin_error(gateway.notifier, e, f"All models failed in #{getattr(new_msg.channel, 'name', 'DM')}")
            await _safe_reply(new_msg, "所有模型皆無法回應，已通知管理員。請稍後再試。")
            return

        await restore_presence()

        target = new_msg
        for idx, chunk in enumerate(split_text(result.text, max_len) or ["(No response)"]):
            if use_plain:
                target = await target.reply(content=chunk)
            else:
                embed = discord.Embed(description=chunk, color=EMBED_COLOR_COMPLETE)
                if idx == 0:
                    for w in sorted(warnings):
                        embed.add_field(name=w, value="", inline=False)
                target = await target.reply(embed=embed, silent=True)
            msg_nodes[target.id] = MsgNode(text=result.text, role="assistant", parent_msg=new_msg)

        if (n := len(msg_nodes)) > MAX_MESSAGE_NODES:
            for mid in sorted(msg_nodes.keys())[:n - MAX_MESSAGE_NODES]:
                async with msg_nodes.setdefault(mid, MsgNode()).lock:
                    msg_nodes.pop(mid, None)

    return discord_bot


async def _safe_reply(msg: discord.Message, content: str) -> None:
    try:
        await msg.reply(content)
    except discord.HTTPException as e:
        logging.warning("Could not send failure reply: %s", e)
