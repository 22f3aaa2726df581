"""Platform capability interfaces consumed by the delivery layer."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from aria.core.types import PersonaDefinition


@runtime_checkable
class HasAuthor(Protocol):
    @property
    def author_id(self) -> str: ...

    @property
    def author_name(self) -> str: ...


@dataclass(frozen=True)
class Caller:
    """The human whose message triggered a generation."""

    author_id: str
    author_name: str


class Editable(Protocol):
    """A delivered message; `handle_id` is set when a persona handle sent it."""

    @property
    def id(self) -> str: ...

    @property
    def content(self) -> str: ...

    @property
    def handle_id(self) -> str | None: ...


class Sendable(Protocol):
    """Something that can answer an inbound message without a persona handle."""

    async def reply(
        self,
        content: str,
        *,
        persona: PersonaDefinition | None = None,
        author: HasAuthor | None = None,
    ) -> Editable: ...


class Handle(Protocol):
    """A live named messaging endpoint, e.g. a Discord webhook."""

    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str: ...

    @property
    def created_at(self) -> datetime: ...

    async def validate(self) -> None: ...

    async def delete(self, reason: str) -> None: ...

    async def send(self, content: str, *, username: str, avatar_url: str | None = None) -> Editable: ...

    async def edit_message(self, message_id: str, content: str) -> Editable: ...


class Destination(Protocol):
    """A channel able to host persona handles."""

    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str: ...

    async def list_handles(self) -> Sequence[Handle]: ...

    async def create_handle(self, name: str, avatar: str | None = None) -> Handle: ...

    async def fetch_handle(self, handle_id: str) -> Handle | None: ...
