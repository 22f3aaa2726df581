from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import pytest

from aria.app.events import DeliveryOutcome
from aria.channels.base import Caller
from aria.channels.discord import CONTINUE_EMOJI, REROLL_EMOJI, DiscordChannel, DiscordConfig
from aria.channels.discord_adapters import (
    RESET_MESSAGE_CONTENT,
    DiscordReply,
    history_from_messages,
    infer_persona,
    persona_name_of,
)
from aria.core.admission import AdmissionController
from aria.core.types import PersonaDefinition, Role, SafetyMode
from aria.personas import PersonaCatalog

BOT_ID = 1000
BOT_USER = SimpleNamespace(id=BOT_ID)
NOVA = PersonaDefinition(display_name="Nova")


def _message(
    message_id: int,
    content: str,
    *,
    author_id: int = 1,
    name: str = "alice",
    bot: bool = False,
    webhook_id: int | None = None,
    embeds: list[Any] | None = None,
    attachments: list[Any] | None = None,
    clean_content: str | None = None,
) -> Any:
    return SimpleNamespace(
        id=message_id,
        content=content,
        clean_content=clean_content if clean_content is not None else content,
        author=SimpleNamespace(id=author_id, name=name, display_name=name, bot=bot),
        webhook_id=webhook_id,
        embeds=embeds or [],
        attachments=attachments or [],
        created_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


def test_history_assigns_roles_by_persona() -> None:
    messages = [
        _message(1, "hi <@1000>", clean_content="hi @Aria"),
        _message(
            2,
            "hello!\n[Generated by alice](<https://discord.com/users/1>)",
            author_id=555,
            name="Nova",
            bot=True,
            webhook_id=77,
        ),
        _message(3, "I'm Rook", author_id=556, name="Rook", bot=True, webhook_id=78),
    ]

    turns = history_from_messages(messages, bot_id=BOT_ID, persona=NOVA, assistant_name="Nova", sanitize=True)

    assert [(turn.speaker, turn.role) for turn in turns] == [
        ("alice", Role.USER),
        ("Nova", Role.ASSISTANT),
        ("Rook", Role.USER),
    ]
    assert turns[0].text == "hi @Aria"
    assert turns[1].text == "hello!"
    assert turns[2].message_id == "3"


def test_history_starts_after_last_reset_marker() -> None:
    messages = [
        _message(1, "old"),
        _message(2, RESET_MESSAGE_CONTENT, author_id=BOT_ID, bot=True),
        _message(3, "new"),
    ]

    turns = history_from_messages(messages, bot_id=BOT_ID, persona=None, assistant_name="Aria")

    assert [turn.text for turn in turns] == ["new"]


def test_history_reads_embed_fallback_and_images() -> None:
    embed = SimpleNamespace(title="Nova", description="from an embed")
    image = SimpleNamespace(url="https://cdn.example.com/cat.png", content_type="image/png")
    text_file = SimpleNamespace(url="https://cdn.example.com/notes.txt", content_type="text/plain")
    messages = [
        _message(1, "", attachments=[image, text_file]),
        _message(2, "", author_id=BOT_ID, name="Aria", bot=True, embeds=[embed]),
        _message(3, "plain bot reply", author_id=BOT_ID, name="Aria", bot=True),
    ]

    turns = history_from_messages(messages, bot_id=BOT_ID, persona=NOVA, assistant_name="Aria")

    assert turns[0].media == ({"url": "https://cdn.example.com/cat.png", "content_type": "image/png"},)
    assert (turns[1].speaker, turns[1].role, turns[1].text) == ("Nova", Role.ASSISTANT, "from an embed")
    assert (turns[2].speaker, turns[2].role) == ("Aria", Role.ASSISTANT)


def test_persona_name_of_ignores_human_messages() -> None:
    assert persona_name_of(_message(1, "hi"), BOT_ID) is None
    assert persona_name_of(_message(2, "hey", name="Nova", bot=True, webhook_id=9), BOT_ID) == "Nova"


def _channel(**config: Any) -> DiscordChannel:
    catalog = PersonaCatalog([NOVA, PersonaDefinition(display_name="Rook")])
    return DiscordChannel(SimpleNamespace(), catalog, DiscordConfig(token="t", **config))  # type: ignore[arg-type]


def test_mode_follows_channel_nsfw_flag() -> None:
    assert DiscordChannel._mode_for(SimpleNamespace(is_nsfw=lambda: True)) is SafetyMode.NSFW
    assert DiscordChannel._mode_for(SimpleNamespace(is_nsfw=lambda: False)) is SafetyMode.SFW


def test_targeted_persona_from_at_mention() -> None:
    channel = _channel()
    message = SimpleNamespace(reference=None, content="hey @rook, status?")

    assert channel._targeted_persona(message) == PersonaDefinition(display_name="Rook")
    assert channel._targeted_persona(SimpleNamespace(reference=None, content="hello")) is None


def test_admin_override_counts_as_admin() -> None:
    channel = _channel(admin_override_id="7")

    assert channel._is_admin(SimpleNamespace(author=SimpleNamespace(id=7)))
    assert not channel._is_admin(SimpleNamespace(author=SimpleNamespace(id=8)))


def test_history_keeps_raw_mentions_unless_sanitized() -> None:
    messages = [_message(1, "hi <@1000>", clean_content="hi @Aria")]

    raw = history_from_messages(messages, bot_id=BOT_ID, persona=None, assistant_name="Aria")
    clean = history_from_messages(messages, bot_id=BOT_ID, persona=None, assistant_name="Aria", sanitize=True)

    assert raw[0].text == "hi <@1000>"
    assert clean[0].text == "hi @Aria"


def _lookup(name: str) -> PersonaDefinition | None:
    return PersonaCatalog([NOVA, PersonaDefinition(display_name="Rook")]).get(name)


def test_infer_persona_uses_latest_switch_notice() -> None:
    newest_first = [
        _message(3, "what now?"),
        _message(2, "Switched to Rook", author_id=BOT_ID, bot=True),
        _message(1, "hello", author_id=555, name="Nova", bot=True, webhook_id=77),
    ]

    persona = infer_persona(newest_first, bot_id=BOT_ID, lookup=_lookup, assistant_name="Aria")

    assert persona == PersonaDefinition(display_name="Rook")


def test_infer_persona_from_persona_messages() -> None:
    embed = SimpleNamespace(title="Nova", description="from an embed")
    webhook = [_message(2, "hey", author_id=555, name="Nova", bot=True, webhook_id=77), _message(1, "hi")]
    embedded = [_message(2, "", author_id=BOT_ID, name="Aria", bot=True, embeds=[embed])]

    assert infer_persona(webhook, bot_id=BOT_ID, lookup=_lookup, assistant_name="Aria") == NOVA
    assert infer_persona(embedded, bot_id=BOT_ID, lookup=_lookup, assistant_name="Aria") == NOVA


def test_infer_persona_stops_at_switch_back_to_assistant() -> None:
    newest_first = [
        _message(2, "Switched to Aria", author_id=BOT_ID, bot=True),
        _message(1, "hey", author_id=555, name="Nova", bot=True, webhook_id=77),
    ]

    assert infer_persona(newest_first, bot_id=BOT_ID, lookup=_lookup, assistant_name="Aria") is None
    assert infer_persona([_message(1, "hi")], bot_id=BOT_ID, lookup=_lookup, assistant_name="Aria") is None


@pytest.mark.asyncio
async def test_fallback_reply_carries_attribution() -> None:
    sent: list[dict[str, Any]] = []

    async def reply(**kwargs: Any) -> Any:
        sent.append(kwargs)
        return _message(9, kwargs.get("content") or "", author_id=BOT_ID, bot=True)

    target = DiscordReply(SimpleNamespace(reply=reply))  # type: ignore[arg-type]
    caller = Caller(author_id="42", author_name="alice")

    await target.reply("plain", author=caller)
    await target.reply("boxed", persona=NOVA, author=caller)

    marker = "[Generated by alice](<https://discord.com/users/42>)"
    assert sent[0]["content"] == f"plain\n{marker}"
    assert sent[1]["embed"].description == f"boxed\n{marker}"
    assert sent[1]["embed"].title == "Nova"


class FakeOrchestrator:
    def __init__(self, outcome: DeliveryOutcome) -> None:
        self.outcome = outcome
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.admission = AdmissionController(limit=10, scheduler=SimpleNamespace())  # type: ignore[arg-type]

    async def submit(self, *args: Any, **kwargs: Any) -> DeliveryOutcome:
        self.calls.append(("submit", args, kwargs))
        return self.outcome

    async def reroll(self, *args: Any, **kwargs: Any) -> DeliveryOutcome:
        self.calls.append(("reroll", args, kwargs))
        return self.outcome

    async def continue_reply(self, *args: Any, **kwargs: Any) -> DeliveryOutcome:
        self.calls.append(("continue_reply", args, kwargs))
        return self.outcome


@asynccontextmanager
async def _typing() -> AsyncIterator[None]:
    yield


def _text_channel(history: list[Any]) -> Any:
    async def _history(limit: int, before: Any = None) -> AsyncIterator[Any]:
        newest_first = [item for item in reversed(history) if before is None or item.id < before.id]
        for item in newest_first[:limit]:
            yield item

    return SimpleNamespace(id=5, name="general", history=_history, typing=_typing, is_nsfw=lambda: False)


def _live_channel(outcome: DeliveryOutcome, **config: Any) -> tuple[DiscordChannel, FakeOrchestrator]:
    orchestrator = FakeOrchestrator(outcome)
    catalog = PersonaCatalog([NOVA, PersonaDefinition(display_name="Rook")])
    channel = DiscordChannel(orchestrator, catalog, DiscordConfig(token="t", **config))  # type: ignore[arg-type]
    channel._bot = SimpleNamespace(user=BOT_USER)  # type: ignore[assignment]
    return channel, orchestrator


def _inbound(content: str, clean_content: str, history: list[Any], *, author_id: int = 1) -> Any:
    message = _message(50, content, author_id=author_id, clean_content=clean_content)
    message.channel = _text_channel(history)
    message.mentions = [BOT_USER]
    message.reference = None
    return message


@pytest.mark.asyncio
async def test_raw_request_from_non_admin_is_answered_with_clean_history() -> None:
    channel, orchestrator = _live_channel(DeliveryOutcome(status="delivered"))
    message = _inbound("hi <@1000>", "hi @Aria", [])

    await channel._on_message(message)

    name, args, _ = orchestrator.calls[0]
    assert name == "submit"
    assert args[1] is None
    assert args[3][-1].text == "hi @Aria"


@pytest.mark.asyncio
async def test_raw_request_from_admin_keeps_mention_markup() -> None:
    channel, orchestrator = _live_channel(DeliveryOutcome(status="delivered"), admin_override_id="1")
    message = _inbound("hi <@1000>", "hi @Aria", [])

    await channel._on_message(message)

    _, args, _ = orchestrator.calls[0]
    assert args[3][-1].text == "hi <@1000>"


@pytest.mark.asyncio
async def test_persona_is_inferred_from_channel_history() -> None:
    channel, orchestrator = _live_channel(DeliveryOutcome(status="delivered"))
    earlier = _message(10, "greetings", author_id=555, name="Nova", bot=True, webhook_id=77)
    message = _inbound("and then?", "and then?", [earlier])

    await channel._on_message(message)

    _, args, _ = orchestrator.calls[0]
    assert args[1] == NOVA
    assert [turn.role for turn in args[3]] == [Role.ASSISTANT, Role.USER]


def _persona_message(notices: list[str]) -> Any:
    async def reply(*, content: str, **_: Any) -> None:
        notices.append(content)

    message = _message(60, "the story so far", author_id=555, name="Nova", bot=True, webhook_id=77)
    message.channel = _text_channel([_message(59, "tell me a story")])
    message.reply = reply
    return message


def _reaction(message: Any, emoji: str, removed: list[Any]) -> Any:
    async def remove(user: Any) -> None:
        removed.append(user)

    return SimpleNamespace(message=message, emoji=emoji, remove=remove)


@pytest.mark.asyncio
async def test_deferred_reroll_notifies_the_reacting_user() -> None:
    channel, orchestrator = _live_channel(DeliveryOutcome(status="deferred", retry_after=30.0))
    notices: list[str] = []
    removed: list[Any] = []
    user = SimpleNamespace(id=9, display_name="bob", bot=False)

    await channel._on_reaction(_reaction(_persona_message(notices), REROLL_EMOJI, removed), user)

    name, _, kwargs = orchestrator.calls[0]
    assert name == "reroll"
    assert kwargs["on_deferred"] is not None
    assert notices == ["Rate limited. Your message will be answered in 30s."]
    assert removed == [user]


@pytest.mark.asyncio
async def test_continue_reaction_extends_the_persona_message() -> None:
    channel, orchestrator = _live_channel(DeliveryOutcome(status="delivered"))
    user = SimpleNamespace(id=9, display_name="bob", bot=False)
    message = _persona_message([])

    await channel._on_reaction(_reaction(message, CONTINUE_EMOJI, []), user)

    name, args, kwargs = orchestrator.calls[0]
    assert name == "continue_reply"
    assert args[2] == NOVA
    assert [turn.text for turn in args[4]] == ["tell me a story", "the story so far"]
    assert kwargs["reply"] is not None


def test_rate_limit_command_is_admin_only() -> None:
    channel, orchestrator = _live_channel(DeliveryOutcome(status="delivered"), admin_override_id="7")

    refused = channel._update_rate_limit(SimpleNamespace(author=SimpleNamespace(id=8)), 3)
    invalid = channel._update_rate_limit(SimpleNamespace(author=SimpleNamespace(id=7)), 0)
    accepted = channel._update_rate_limit(SimpleNamespace(author=SimpleNamespace(id=7)), 3)

    assert refused.startswith("You must be an administrator")
    assert invalid.startswith("Invalid rate limit")
    assert accepted == "Rate limit set to 3 requests per 60s."
    assert orchestrator.admission.limit == 3
