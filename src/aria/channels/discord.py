"""Discord channel adapter."""

from __future__ import annotations

import re
from dataclasses import dataclass

import discord
from discord.ext import commands
from loguru import logger

from aria.app.events import DeliveryOutcome
from aria.app.orchestrator import Orchestrator
from aria.channels.base import Caller
from aria.channels.discord_adapters import (
    RESET_MESSAGE_CONTENT,
    DiscordDestination,
    DiscordMessage,
    DiscordReply,
    history_from_messages,
    infer_persona,
    persona_name_of,
)
from aria.channels.utils import resolve_proxy
from aria.core.types import ConversationTurn, PersonaDefinition, SafetyMode
from aria.personas import PersonaCatalog

HISTORY_LIMIT = 100
NOTICE_SECONDS = 5
REROLL_EMOJI = "\N{BLACK UNIVERSAL RECYCLING SYMBOL}\N{VARIATION SELECTOR-16}"
DELETE_EMOJI = "\N{CROSS MARK}"
CONTINUE_EMOJI = "\N{BLACK RIGHTWARDS ARROW}\N{VARIATION SELECTOR-16}"


@dataclass(frozen=True)
class DiscordConfig:
    """Discord adapter config."""

    token: str
    command_prefix: str = "!"
    admin_override_id: str | None = None
    assistant_name: str = "Aria"
    proxy: str | None = None


class DiscordChannel:
    """Turn Discord messages into orchestrator requests."""

    name = "discord"

    def __init__(self, orchestrator: Orchestrator, catalog: PersonaCatalog, config: DiscordConfig) -> None:
        self._orchestrator = orchestrator
        self._catalog = catalog
        self._config = config
        self._bot: commands.Bot | None = None

    @property
    def bot_id(self) -> int | None:
        if self._bot is None or self._bot.user is None:
            return None
        return self._bot.user.id

    async def start(self) -> None:
        if not self._config.token:
            raise RuntimeError("discord token is empty")

        intents = discord.Intents.default()
        intents.messages = True
        intents.message_content = True
        intents.reactions = True

        proxy, proxy_source = resolve_proxy(self._config.proxy)
        bot = commands.Bot(command_prefix=self._config.command_prefix, intents=intents, help_command=None, proxy=proxy)
        self._bot = bot
        self._register_commands(bot)

        @bot.event
        async def on_ready() -> None:
            logger.info("discord.ready user={} id={}", str(bot.user), bot.user.id if bot.user else "<unknown>")

        @bot.event
        async def on_message(message: discord.Message) -> None:
            if message.content.startswith(self._config.command_prefix):
                await bot.process_commands(message)
                return
            await self._on_message(message)

        @bot.event
        async def on_reaction_add(reaction: discord.Reaction, user: discord.User | discord.Member) -> None:
            await self._on_reaction(reaction, user)

        self._orchestrator.start()
        logger.info("discord.start personas={} proxy_source={}", len(self._catalog), proxy_source)
        try:
            async with bot:
                await bot.start(self._config.token)
        finally:
            await self._orchestrator.stop()
            self._bot = None
            logger.info("discord.stopped")

    def _register_commands(self, bot: commands.Bot) -> None:
        @bot.command(name="list")
        async def _list(ctx: commands.Context) -> None:
            names = self._catalog.names()
            await ctx.reply("Available personas: " + (", ".join(names) if names else "(none)"))

        @bot.command(name="switch")
        async def _switch(ctx: commands.Context, *, name: str) -> None:
            persona = self._catalog.activate(str(ctx.channel.id), name)
            if persona is None:
                await ctx.reply(f"Unknown persona: {name}", delete_after=NOTICE_SECONDS)
                return
            await ctx.reply(f"Switched to {persona.display_name}")

        @bot.command(name="raw")
        async def _raw(ctx: commands.Context) -> None:
            self._catalog.deactivate(str(ctx.channel.id))
            await ctx.reply(f"Switched to {self._config.assistant_name}")

        @bot.command(name="reset")
        async def _reset(ctx: commands.Context) -> None:
            await ctx.send(RESET_MESSAGE_CONTENT)

        @bot.command(name="ratelimit")
        async def _ratelimit(ctx: commands.Context, limit: int) -> None:
            await ctx.reply(self._update_rate_limit(ctx.message, limit), delete_after=NOTICE_SECONDS)

    def _update_rate_limit(self, message: discord.Message, limit: int) -> str:
        if not self._is_admin(message):
            return "You must be an administrator to change the rate limit."
        admission = self._orchestrator.admission
        try:
            admission.update_limit(limit)
        except ValueError as exc:
            return f"Invalid rate limit: {exc}"
        return f"Rate limit set to {limit} requests per {admission.window_seconds:g}s."

    async def _on_message(self, message: discord.Message) -> None:
        if message.content == RESET_MESSAGE_CONTENT:
            return
        if message.author.bot:
            return

        channel_id = str(message.channel.id)
        persona = self._catalog.active(channel_id)
        targeted = self._targeted_persona(message)
        mentions_bot = self._bot is not None and self._bot.user is not None and self._bot.user in message.mentions
        is_dm = isinstance(message.channel, discord.DMChannel)
        if not (mentions_bot or targeted or is_dm):
            return

        if targeted is not None and not mentions_bot and targeted != persona:
            persona = self._catalog.activate(channel_id, targeted.display_name)
            logger.info("discord.persona.switched channel_id={} persona={}", channel_id, targeted.display_name)

        fetched = await self._fetch(message)
        if self.bot_id is not None and f"<@{self.bot_id}>" in message.content:
            persona = None
        elif persona is None and targeted is None:
            persona = infer_persona(
                reversed(fetched),
                bot_id=self.bot_id,
                lookup=self._catalog.get,
                assistant_name=self._config.assistant_name,
            )

        # Raw-assistant requests from non-admins see mentions as plain names.
        sanitize = persona is None and not is_dm and not self._is_admin(message)
        logger.info(
            "discord.inbound channel_id={} sender_id={} persona={} sanitize={} content={}",
            message.channel.id,
            message.author.id,
            persona.display_name if persona else "-",
            sanitize,
            message.content[:100],
        )
        history = self._turns(fetched, persona, sanitize=sanitize)
        destination = DiscordDestination(message.channel, self._require_bot())
        caller = DiscordMessage(message)

        async def _on_deferred(outcome: DeliveryOutcome) -> None:
            await self._report(message, outcome)

        async with message.channel.typing():
            outcome = await self._orchestrator.submit(
                destination,
                persona,
                caller,
                history,
                mode=self._mode_for(message.channel),
                reply=DiscordReply(message),
                on_deferred=_on_deferred,
            )
        await self._report(message, outcome)

    async def _on_reaction(self, reaction: discord.Reaction, user: discord.User | discord.Member) -> None:
        if user.bot:
            return
        message = reaction.message
        persona_name = persona_name_of(message, self.bot_id)
        if persona_name is None and (self.bot_id is None or message.author.id != self.bot_id):
            return

        emoji = str(reaction.emoji)
        if emoji == DELETE_EMOJI:
            try:
                await message.delete()
            except discord.HTTPException as exc:
                logger.warning("discord.delete.failed message_id={} error={}", message.id, exc)
            return
        if emoji == REROLL_EMOJI and persona_name is not None and message.webhook_id:
            await self._reroll(reaction, user, persona_name)
        elif emoji == CONTINUE_EMOJI:
            await self._continue(reaction, user, persona_name)

    async def _reroll(self, reaction: discord.Reaction, user: discord.User | discord.Member, persona_name: str) -> None:
        message = reaction.message
        persona = self._catalog.get(persona_name)
        if persona is None:
            return
        await self._clear_reaction(reaction, user)
        fetched = await self._fetch(message, before=message)
        caller = Caller(author_id=str(user.id), author_name=user.display_name)

        async def _on_deferred(outcome: DeliveryOutcome) -> None:
            await self._report(message, outcome)

        outcome = await self._orchestrator.reroll(
            DiscordDestination(message.channel, self._require_bot()),
            DiscordMessage(message),
            persona,
            caller,
            self._turns(fetched, persona),
            mode=self._mode_for(message.channel),
            on_deferred=_on_deferred,
        )
        await self._report(message, outcome)

    async def _continue(
        self,
        reaction: discord.Reaction,
        user: discord.User | discord.Member,
        persona_name: str | None,
    ) -> None:
        message = reaction.message
        persona = self._catalog.get(persona_name) if persona_name else None
        if persona_name and persona is None:
            return
        await self._clear_reaction(reaction, user)
        fetched = await self._fetch(message, before=message)
        fetched.append(message)
        caller = Caller(author_id=str(user.id), author_name=user.display_name)

        async def _on_deferred(outcome: DeliveryOutcome) -> None:
            await self._report(message, outcome)

        async with message.channel.typing():
            outcome = await self._orchestrator.continue_reply(
                DiscordDestination(message.channel, self._require_bot()),
                DiscordMessage(message),
                persona,
                caller,
                self._turns(fetched, persona),
                mode=self._mode_for(message.channel),
                reply=DiscordReply(message),
                on_deferred=_on_deferred,
            )
        await self._report(message, outcome)

    async def _clear_reaction(self, reaction: discord.Reaction, user: discord.User | discord.Member) -> None:
        try:
            await reaction.remove(user)
        except discord.HTTPException as exc:
            logger.debug("discord.reaction.remove.failed message_id={} error={}", reaction.message.id, exc)

    async def _fetch(self, message: discord.Message, *, before: discord.Message | None = None) -> list[discord.Message]:
        """Recent channel messages, oldest first; includes `message` unless `before` is set."""
        fetched = [item async for item in message.channel.history(limit=HISTORY_LIMIT, before=before)]
        if before is None and all(item.id != message.id for item in fetched):
            fetched.insert(0, message)
        fetched.reverse()
        return fetched

    def _turns(
        self,
        messages: list[discord.Message],
        persona: PersonaDefinition | None,
        *,
        sanitize: bool = False,
    ) -> list[ConversationTurn]:
        return history_from_messages(
            messages,
            bot_id=self.bot_id,
            persona=persona,
            assistant_name=persona.display_name if persona else self._config.assistant_name,
            sanitize=sanitize,
        )

    def _targeted_persona(self, message: discord.Message) -> PersonaDefinition | None:
        reference = message.reference
        resolved = reference.resolved if reference is not None else None
        if isinstance(resolved, discord.Message) and resolved.webhook_id:
            persona = self._catalog.get(resolved.author.name)
            if persona is not None:
                return persona
        for name in self._catalog.names():
            if re.search(rf"@{re.escape(name)}\b", message.content, flags=re.IGNORECASE):
                return self._catalog.get(name)
        return None

    def _is_admin(self, message: discord.Message) -> bool:
        author = message.author
        if self._config.admin_override_id and str(author.id) == self._config.admin_override_id:
            return True
        return isinstance(author, discord.Member) and author.guild_permissions.administrator

    @staticmethod
    def _mode_for(channel: discord.abc.Messageable) -> SafetyMode:
        if isinstance(channel, discord.DMChannel):
            return SafetyMode.NSFW
        is_nsfw = getattr(channel, "is_nsfw", None)
        return SafetyMode.NSFW if callable(is_nsfw) and is_nsfw() else SafetyMode.SFW

    async def _report(self, message: discord.Message, outcome: DeliveryOutcome) -> None:
        if outcome.status == "deferred":
            seconds = max(1, round(outcome.retry_after))
            await self._notify(message, f"Rate limited. Your message will be answered in {seconds}s.")
        elif outcome.status == "failed" and outcome.error is not None:
            await self._notify(message, outcome.error.user_message())

    async def _notify(self, message: discord.Message, content: str) -> None:
        try:
            await message.reply(content=content, delete_after=NOTICE_SECONDS, mention_author=False)
        except discord.HTTPException as exc:
            logger.error("discord.notify.failed channel_id={} error={}", message.channel.id, exc)

    def _require_bot(self) -> commands.Bot:
        if self._bot is None:
            raise RuntimeError("discord channel is not started")
        return self._bot
