from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from aria.channels.attribution import attribute, format_attribution
from aria.channels.base import Caller
from aria.channels.registry import PersonaChannelRegistry, usable_avatar
from aria.core.types import PersonaDefinition
from aria.errors import PlatformError

EPOCH = datetime(2024, 1, 1, tzinfo=UTC)


@dataclass
class SentMessage:
    id: str
    content: str
    handle_id: str | None


class FakeHandle:
    def __init__(self, destination: FakeDestination, handle_id: str, name: str, created_at: datetime) -> None:
        self.destination = destination
        self.id = handle_id
        self.name = name
        self.created_at = created_at
        self.sent: list[tuple[str, str, str | None]] = []
        self.gone = False
        self.send_error: PlatformError | None = None

    async def validate(self) -> None:
        if self.gone:
            raise PlatformError("unknown webhook", not_found=True)

    async def delete(self, reason: str) -> None:
        self.destination.deleted.append((self.name, reason))
        if not self.destination.refuse_delete:
            self.destination.handles.remove(self)

    async def send(self, content: str, *, username: str, avatar_url: str | None = None) -> SentMessage:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((content, username, avatar_url))
        return SentMessage(id=f"m{len(self.sent)}", content=content, handle_id=self.id)

    async def edit_message(self, message_id: str, content: str) -> SentMessage:
        return SentMessage(id=message_id, content=content, handle_id=self.id)


class FakeDestination:
    def __init__(self, destination_id: str = "chan-1") -> None:
        self.id = destination_id
        self.name = f"#{destination_id}"
        self.handles: list[FakeHandle] = []
        self.created: list[str] = []
        self.deleted: list[tuple[str, str]] = []
        self.list_calls = 0
        self.refuse_delete = False
        self.list_error: PlatformError | None = None

    def seed(self, count: int) -> None:
        for index in range(count):
            self.handles.append(FakeHandle(self, f"h{index}", f"old-{index}", EPOCH + timedelta(minutes=index)))

    async def list_handles(self) -> list[FakeHandle]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return list(self.handles)

    async def create_handle(self, name: str, avatar: str | None = None) -> FakeHandle:
        await asyncio.sleep(0)
        self.created.append(name)
        handle = FakeHandle(self, f"new-{len(self.created)}", name, datetime.now(UTC))
        self.handles.append(handle)
        return handle

    async def fetch_handle(self, handle_id: str) -> FakeHandle | None:
        return next((handle for handle in self.handles if handle.id == handle_id), None)


NOVA = PersonaDefinition(display_name="Nova", avatar="https://example.com/nova.png")
CALLER = Caller(author_id="42", author_name="alice")


@pytest.mark.asyncio
async def test_creates_handle_once_and_then_uses_cache() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()

    first = await registry.get_handle(destination, NOVA)
    second = await registry.get_handle(destination, NOVA)

    assert first is second
    assert destination.created == ["Nova"]
    assert destination.list_calls == 1
    assert registry.cached(destination, NOVA) is first


@pytest.mark.asyncio
async def test_reuses_existing_handle_with_persona_name() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()
    existing = FakeHandle(destination, "h-nova", "Nova", EPOCH)
    destination.handles.append(existing)

    assert await registry.get_handle(destination, NOVA) is existing
    assert destination.created == []


@pytest.mark.asyncio
async def test_rotates_oldest_handle_at_ceiling() -> None:
    registry = PersonaChannelRegistry(max_handles=15)
    destination = FakeDestination()
    destination.seed(15)

    handle = await registry.get_handle(destination, NOVA)

    assert handle is not None
    assert destination.deleted[0][0] == "old-0"
    assert len(destination.handles) == 15
    assert destination.created == ["Nova"]


@pytest.mark.asyncio
async def test_rotation_that_frees_nothing_yields_no_handle() -> None:
    registry = PersonaChannelRegistry(max_handles=3)
    destination = FakeDestination()
    destination.seed(3)
    destination.refuse_delete = True

    assert await registry.get_handle(destination, NOVA) is None
    assert destination.created == []


@pytest.mark.asyncio
async def test_stale_cached_handle_is_replaced() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()
    stale = await registry.get_handle(destination, NOVA)
    assert stale is not None
    stale.gone = True
    destination.handles.remove(stale)

    fresh = await registry.get_handle(destination, NOVA)

    assert fresh is not None
    assert fresh is not stale
    assert destination.created == ["Nova", "Nova"]


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_creation() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()

    handles = await asyncio.gather(*(registry.get_handle(destination, NOVA) for _ in range(5)))

    assert destination.created == ["Nova"]
    assert all(handle is handles[0] for handle in handles)


@pytest.mark.asyncio
async def test_platform_failure_yields_no_handle() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()
    destination.list_error = PlatformError("missing permissions")

    assert await registry.get_handle(destination, NOVA) is None


@pytest.mark.asyncio
async def test_send_attributes_caller_and_uses_persona_identity() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()

    message = await registry.send(destination, NOVA, "hello there", caller=CALLER)

    assert message is not None
    assert message.content == "hello there\n[Generated by alice](<https://discord.com/users/42>)"
    handle = registry.cached(destination, NOVA)
    assert handle is not None
    assert handle.sent[0][1:] == ("Nova", "https://example.com/nova.png")


@pytest.mark.asyncio
async def test_send_keeps_original_attribution_of_replied_message() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()
    earlier = SentMessage(
        id="m0",
        content="first reply\n[Generated by bob](<https://discord.com/users/7>)",
        handle_id="x",
    )

    message = await registry.send(destination, NOVA, "again", caller=CALLER, reply_to=earlier)

    assert message is not None
    assert message.content.endswith("[Generated by bob](<https://discord.com/users/7>)")


@pytest.mark.asyncio
async def test_send_to_deleted_handle_invalidates_cache() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()
    handle = await registry.get_handle(destination, NOVA)
    assert handle is not None
    handle.send_error = PlatformError("unknown webhook", not_found=True)

    assert await registry.send(destination, NOVA, "hi", caller=CALLER) is None
    assert registry.cached(destination, NOVA) is None


@pytest.mark.asyncio
async def test_edit_preserves_attribution() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()
    sent = await registry.send(destination, NOVA, "draft", caller=CALLER)
    assert sent is not None

    edited = await registry.edit(destination, sent, NOVA, "rewritten")

    assert edited is not None
    assert edited.id == sent.id
    assert edited.content == "rewritten\n[Generated by alice](<https://discord.com/users/42>)"


@pytest.mark.asyncio
async def test_edit_skips_messages_not_sent_by_a_handle() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()
    plain = SentMessage(id="m1", content="hi", handle_id=None)

    assert await registry.edit(destination, plain, NOVA, "changed") is None


def test_usable_avatar_accepts_only_remote_urls() -> None:
    assert usable_avatar("https://example.com/a.png") == "https://example.com/a.png"
    assert usable_avatar("avatars/local.png") is None
    assert usable_avatar(None) is None


@pytest.mark.asyncio
async def test_edit_without_marker_is_attributed_to_caller() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()
    handle = await registry.get_handle(destination, NOVA)
    assert handle is not None
    unmarked = SentMessage(id="m9", content="no marker", handle_id=handle.id)

    edited = await registry.edit(destination, unmarked, NOVA, "rewritten", caller=Caller("7", "bob"))

    assert edited is not None
    assert edited.content == "rewritten\n[Generated by bob](<https://discord.com/users/7>)"


@pytest.mark.asyncio
async def test_marker_on_edited_message_wins_over_caller() -> None:
    registry = PersonaChannelRegistry()
    destination = FakeDestination()
    sent = await registry.send(destination, NOVA, "draft", caller=CALLER)
    assert sent is not None

    edited = await registry.edit(destination, sent, NOVA, "rewritten", caller=Caller("7", "bob"))

    assert edited is not None
    assert "[Generated by alice]" in edited.content
    assert "bob" not in edited.content


def test_part_limit_leaves_room_for_attribution() -> None:
    limit = PersonaChannelRegistry.part_limit(CALLER)

    assert limit + len(attribute("", CALLER)) == 2000
    assert PersonaChannelRegistry.part_limit(None) == 2000


def test_author_for_prefers_marker_then_caller() -> None:
    marked = SentMessage(id="m1", content=f"hi\n{format_attribution(CALLER)}", handle_id="h1")
    unmarked = SentMessage(id="m2", content="hi", handle_id="h1")
    bob = Caller("7", "bob")

    assert PersonaChannelRegistry.author_for(caller=bob, reply_to=marked) == CALLER
    assert PersonaChannelRegistry.author_for(caller=bob, reply_to=unmarked) == bob
    assert PersonaChannelRegistry.author_for() is None
