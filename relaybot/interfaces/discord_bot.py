"""
Discord transport for relaybot.

Every non-bot message the client can see is turned into an
:class:`IncomingMessage` and handed to the message handler on a worker
thread (``asyncio.to_thread``). The handler's callbacks are synchronous, so
each one schedules a coroutine on the bot's event loop and waits for it.

Mapping:
  * ``<@id>`` mentions become ``@id`` so the response gate can match them.
  * Image/audio/video attachments become base64 content blocks.
  * A reply to another message becomes a quote block plus ``quoted_sender_id``.
  * Confirmation prompts are answered with 👍 / 👎 reactions from the sender;
    no answer within the timeout counts as 👎.
"""

import asyncio
import base64
import concurrent.futures
import logging
import os
import re
from typing import Any, Awaitable, List, Optional

import discord

from relaybot.core.content import AudioBlock, Block, ImageBlock, QuoteBlock, TextBlock, VideoBlock
from relaybot.interfaces.incoming import IncomingMessage
from relaybot.utils.config import get_transport_config

logger = logging.getLogger(__name__)

CONFIRM_YES = "👍"
CONFIRM_NO = "👎"
POLL_EMOJIS = ["1️⃣", "2️⃣", "3️⃣", "4️⃣", "5️⃣", "6️⃣", "7️⃣", "8️⃣", "9️⃣"]
CALLBACK_TIMEOUT_SEC = 30
MAX_ATTACHMENT_BYTES = 20 * 1024 * 1024

_MENTION = re.compile(r"<@!?(\d+)>")
_MEDIA_BLOCKS = {"image/": ImageBlock, "audio/": AudioBlock, "video/": VideoBlock}


def _truncate(text: str, max_len: int = 1900) -> str:
    """Truncate text for Discord (max 2000 chars per message)."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def normalize_mentions(text: str) -> str:
    """``<@123>`` / ``<@!123>`` -> ``@123``."""
    return _MENTION.sub(lambda m: f"@{m.group(1)}", text or "")


async def _attachment_block(attachment: Any) -> Optional[Block]:
    content_type = (attachment.content_type or "").split(";")[0].strip().lower()
    for prefix, cls in _MEDIA_BLOCKS.items():
        if content_type.startswith(prefix):
            break
    else:
        return None
    if attachment.size and attachment.size > MAX_ATTACHMENT_BYTES:
        logger.info("Skipping %s attachment of %d bytes", content_type, attachment.size)
        return None
    raw = await attachment.read()
    return cls(base64.b64encode(raw).decode("ascii"), content_type)


async def message_blocks(message: Any, include_reference: bool = True) -> List[Block]:
    """Content blocks for one Discord message."""
    blocks: List[Block] = []
    if include_reference:
        quoted = _referenced_message(message)
        if quoted is not None:
            inner = await message_blocks(quoted, include_reference=False)
            if inner:
                blocks.append(QuoteBlock(inner, sender_id=str(quoted.author.id)))
    text = normalize_mentions(message.content).strip()
    if text:
        blocks.append(TextBlock(text))
    for attachment in message.attachments:
        try:
            block = await _attachment_block(attachment)
        except discord.HTTPException as e:
            logger.warning("Failed to download attachment %s: %s", attachment.filename, e)
            continue
        if block is not None:
            blocks.append(block)
    return blocks


def _referenced_message(message: Any) -> Optional[Any]:
    ref = getattr(message, "reference", None)
    resolved = getattr(ref, "resolved", None) if ref else None
    if isinstance(resolved, discord.Message):
        return resolved
    return None


def _is_admin(message: Any) -> bool:
    if message.guild is None:
        return True
    perms = getattr(message.author, "guild_permissions", None)
    return bool(perms and (perms.administrator or perms.manage_guild))


class DiscordCallbacks:
    """Synchronous callbacks for one inbound message, run on the bot loop."""

    def __init__(
        self,
        client: discord.Client,
        message: Any,
        loop: asyncio.AbstractEventLoop,
        confirm_timeout: float,
        max_len: int,
    ) -> None:
        self.client = client
        self.message = message
        self.loop = loop
        self.confirm_timeout = confirm_timeout
        self.max_len = max_len

    def _run(self, coro: Awaitable[Any], timeout: float = CALLBACK_TIMEOUT_SEC) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout=timeout)

    def send_message(self, text: str) -> None:
        self._run(self.message.channel.send(_truncate(text, self.max_len)))

    def reply(self, text: str) -> None:
        self._run(self.message.reply(_truncate(text, self.max_len), mention_author=False))

    def react(self, emoji: str) -> None:
        self._run(self.message.add_reaction(emoji))

    def send_poll(self, question: str, options: List[str]) -> None:
        self._run(self._send_poll(question, options[: len(POLL_EMOJIS)]))

    async def _send_poll(self, question: str, options: List[str]) -> None:
        lines = [f"📊 *{question}*"] + [f"{POLL_EMOJIS[i]} {opt}" for i, opt in enumerate(options)]
        sent = await self.message.channel.send(_truncate("\n".join(lines), self.max_len))
        for i in range(len(options)):
            await sent.add_reaction(POLL_EMOJIS[i])

    def confirm(self, prompt: str) -> bool:
        future = asyncio.run_coroutine_threadsafe(self._confirm(prompt), self.loop)
        try:
            return bool(future.result(timeout=self.confirm_timeout + CALLBACK_TIMEOUT_SEC))
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.info("Confirmation in channel %s got no answer, treating as denied",
                        self.message.channel.id)
            return False

    async def _confirm(self, prompt: str) -> bool:
        sent = await self.message.channel.send(_truncate(prompt, self.max_len))
        await sent.add_reaction(CONFIRM_YES)
        await sent.add_reaction(CONFIRM_NO)
        author_id = self.message.author.id

        def check(reaction: Any, user: Any) -> bool:
            return (
                reaction.message.id == sent.id
                and user.id == author_id
                and str(reaction.emoji) in (CONFIRM_YES, CONFIRM_NO)
            )

        try:
            reaction, _user = await self.client.wait_for(
                "reaction_add", timeout=self.confirm_timeout, check=check
            )
        except asyncio.TimeoutError:
            logger.info("Confirmation timed out in channel %s", self.message.channel.id)
            return False
        return str(reaction.emoji) == CONFIRM_YES


async def build_incoming(client: discord.Client, message: Any) -> IncomingMessage:
    cfg = get_transport_config()
    callbacks = DiscordCallbacks(
        client, message, asyncio.get_running_loop(),
        cfg["confirm_timeout_sec"], cfg["max_message_len"],
    )
    quoted = _referenced_message(message)
    me = client.user
    return IncomingMessage(
        chat_id=str(message.channel.id),
        sender_ids=[str(message.author.id)],
        content=await message_blocks(message),
        is_group=message.guild is not None,
        sender_name=message.author.display_name,
        timestamp=message.created_at,
        self_ids=[str(me.id)],
        self_name=me.display_name,
        quoted_sender_id=str(quoted.author.id) if quoted is not None else None,
        get_admin_status=lambda: _is_admin(message),
        send_message=callbacks.send_message,
        reply_to_message=callbacks.reply,
        react_to_message=callbacks.react,
        send_poll=callbacks.send_poll,
        confirm=callbacks.confirm,
    )


def create_bot(handler: Any) -> discord.Client:
    """Create a Discord client that feeds every message into ``handler``."""
    intents = discord.Intents.default()
    intents.message_content = True
    intents.dm_messages = True
    intents.reactions = True

    class RelayBot(discord.Client):
        async def on_ready(self):
            logger.info("Discord bot ready: %s (id %s)", self.user, self.user.id)

        async def on_message(self, message):
            if message.author.bot or message.author.id == self.user.id:
                return
            incoming = await build_incoming(self, message)
            if not incoming.content:
                return
            try:
                async with message.channel.typing():
                    outcome = await asyncio.to_thread(handler.handle_message, incoming)
                logger.debug("Turn in %s finished: %s", incoming.chat_id, outcome)
            except Exception as e:
                logger.error("Discord bot error: %s", e, exc_info=True)
                await message.reply(f"Sorry, I encountered an error: {e}")

    return RelayBot(intents=intents)


def run_bot(handler: Any, token: Optional[str] = None) -> None:
    """Run the Discord bot (blocking)."""
    token = token or os.environ.get("DISCORD_BOT_TOKEN")
    if not token:
        raise ValueError(
            "DISCORD_BOT_TOKEN not set. Create a bot at https://discord.com/developers/applications "
            "and add the token to .env"
        )
    bot = create_bot(handler)
    bot.run(token, log_handler=None)
