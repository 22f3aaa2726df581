"""discord.py implementations of the platform capability interfaces."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime

import aiohttp
import discord
from loguru import logger

from aria.channels.attribution import attribute, strip_attribution
from aria.channels.base import HasAuthor
from aria.core.types import ConversationTurn, PersonaDefinition, Role
from aria.errors import PlatformError

RESET_MESSAGE_CONTENT = "--- Bot conversation history reset ---"
SWITCH_RE = re.compile(r"Switched to (.+?)(?:\n|$)")
AVATAR_FETCH_TIMEOUT_SECONDS = 10


@contextmanager
def platform_errors(action: str) -> Iterator[None]:
    try:
        yield
    except discord.NotFound as exc:
        raise PlatformError(f"{action}: {exc}", not_found=True) from exc
    except discord.HTTPException as exc:
        raise PlatformError(f"{action}: {exc}") from exc


class DiscordMessage:
    """A delivered or inbound Discord message."""

    def __init__(self, message: discord.Message | discord.WebhookMessage) -> None:
        self.raw = message

    @property
    def id(self) -> str:
        return str(self.raw.id)

    @property
    def content(self) -> str:
        return self.raw.content or ""

    @property
    def handle_id(self) -> str | None:
        return str(self.raw.webhook_id) if self.raw.webhook_id else None

    @property
    def author_id(self) -> str:
        return str(self.raw.author.id)

    @property
    def author_name(self) -> str:
        return self.raw.author.display_name


class DiscordHandle:
    """A channel webhook used to speak as one persona."""

    def __init__(self, webhook: discord.Webhook) -> None:
        self.raw = webhook

    @property
    def id(self) -> str:
        return str(self.raw.id)

    @property
    def name(self) -> str:
        return self.raw.name or ""

    @property
    def created_at(self) -> datetime:
        return self.raw.created_at

    async def validate(self) -> None:
        with platform_errors("validate webhook"):
            await self.raw.edit(name=self.raw.name)

    async def delete(self, reason: str) -> None:
        with platform_errors("delete webhook"):
            await self.raw.delete(reason=reason)

    async def send(self, content: str, *, username: str, avatar_url: str | None = None) -> DiscordMessage:
        with platform_errors("send via webhook"):
            sent = await self.raw.send(content=content, username=username, avatar_url=avatar_url, wait=True)
        return DiscordMessage(sent)

    async def edit_message(self, message_id: str, content: str) -> DiscordMessage:
        with platform_errors("edit via webhook"):
            edited = await self.raw.edit_message(int(message_id), content=content)
        return DiscordMessage(edited)


class DiscordDestination:
    """A Discord channel; only guild text channels can host webhooks."""

    def __init__(self, channel: discord.abc.Messageable, client: discord.Client) -> None:
        self.raw = channel
        self._client = client

    @property
    def id(self) -> str:
        return str(getattr(self.raw, "id", "dm"))

    @property
    def name(self) -> str:
        return str(getattr(self.raw, "name", None) or self.id)

    def _text_channel(self) -> discord.TextChannel:
        if not isinstance(self.raw, discord.TextChannel):
            raise PlatformError(f"channel {self.id} does not support webhooks")
        return self.raw

    async def list_handles(self) -> Sequence[DiscordHandle]:
        channel = self._text_channel()
        with platform_errors("list webhooks"):
            webhooks = await channel.webhooks()
        return [DiscordHandle(webhook) for webhook in webhooks]

    async def create_handle(self, name: str, avatar: str | None = None) -> DiscordHandle:
        channel = self._text_channel()
        avatar_bytes = await fetch_avatar(avatar) if avatar else None
        with platform_errors("create webhook"):
            webhook = await channel.create_webhook(
                name=name,
                avatar=avatar_bytes,
                reason=f"Auto-created webhook for persona {name}",
            )
        return DiscordHandle(webhook)

    async def fetch_handle(self, handle_id: str) -> DiscordHandle | None:
        try:
            with platform_errors("fetch webhook"):
                webhook = await self._client.fetch_webhook(int(handle_id))
        except PlatformError as exc:
            if exc.not_found:
                return None
            raise
        return DiscordHandle(webhook)


class DiscordReply:
    """Plain reply to an inbound message, used when no persona handle is available."""

    def __init__(self, message: discord.Message) -> None:
        self.raw = message

    async def reply(
        self,
        content: str,
        *,
        persona: PersonaDefinition | None = None,
        author: HasAuthor | None = None,
    ) -> DiscordMessage:
        content = attribute(content, author)
        with platform_errors("reply"):
            if persona is None:
                sent = await self.raw.reply(content=content, mention_author=True)
            else:
                embed = discord.Embed(title=persona.display_name, description=content)
                if persona.avatar and persona.avatar.startswith(("http://", "https://")):
                    embed.set_thumbnail(url=persona.avatar)
                sent = await self.raw.reply(embed=embed, mention_author=True)
        return DiscordMessage(sent)


async def fetch_avatar(url: str) -> bytes | None:
    timeout = aiohttp.ClientTimeout(total=AVATAR_FETCH_TIMEOUT_SECONDS)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session, session.get(url) as response:
            response.raise_for_status()
            return await response.read()
    except (aiohttp.ClientError, TimeoutError) as exc:
        logger.warning("discord.avatar.unavailable url={} error={}", url, exc)
        return None


def persona_name_of(message: discord.Message, bot_id: int | None) -> str | None:
    """Name of the persona that posted `message`, if a persona did."""
    if message.webhook_id and message.author.name:
        return message.author.name
    if message.author.bot and message.author.id == bot_id and message.embeds:
        return message.embeds[0].title or None
    return None


def history_from_messages(
    messages: Sequence[discord.Message],
    *,
    bot_id: int | None,
    persona: PersonaDefinition | None,
    assistant_name: str,
    sanitize: bool = False,
) -> list[ConversationTurn]:
    """Convert chronological Discord messages into conversation turns.

    With `sanitize`, human messages are read with mentions resolved to plain
    names instead of raw `<@id>` markup.
    """
    reset_index = next(
        (index for index in range(len(messages) - 1, -1, -1) if RESET_MESSAGE_CONTENT in messages[index].content),
        None,
    )
    if reset_index is not None:
        messages = messages[reset_index + 1 :]

    turns: list[ConversationTurn] = []
    for message in messages:
        if not (message.content or message.attachments or message.embeds):
            continue

        speaker_persona = persona_name_of(message, bot_id)
        if speaker_persona is not None:
            speaker = speaker_persona
            is_own = persona is not None and persona.display_name == speaker_persona
            role = Role.ASSISTANT if is_own else Role.USER
            embed_text = message.embeds[0].description if message.embeds else None
            text = embed_text or message.content
        elif bot_id is not None and message.author.id == bot_id:
            speaker = assistant_name
            role = Role.ASSISTANT
            text = message.content
        else:
            speaker = message.author.display_name
            role = Role.USER
            text = message.clean_content if sanitize else message.content

        media = tuple(
            {"url": attachment.url, "content_type": attachment.content_type}
            for attachment in message.attachments
            if (attachment.content_type or "").startswith("image/")
        )
        turns.append(
            ConversationTurn(
                speaker=speaker,
                role=role,
                text=strip_attribution(text or ""),
                timestamp=message.created_at,
                media=media,
                message_id=str(message.id),
            )
        )
    return turns


def infer_persona(
    messages: Iterable[discord.Message],
    *,
    bot_id: int | None,
    lookup: Callable[[str], PersonaDefinition | None],
    assistant_name: str,
) -> PersonaDefinition | None:
    """Persona the conversation was last held with, scanning newest first.

    A bot "Switched to" notice or a message posted by a known persona decides;
    None means the plain assistant.
    """
    for message in messages:
        name: str | None = None
        if bot_id is not None and message.author.id == bot_id and not message.webhook_id:
            match = SWITCH_RE.match(message.content)
            if match:
                name = match.group(1).strip()
        if name is None:
            name = persona_name_of(message, bot_id)
        if not name:
            continue
        if name.casefold() == assistant_name.casefold():
            return None
        persona = lookup(name)
        if persona is not None:
            return persona
    return None
