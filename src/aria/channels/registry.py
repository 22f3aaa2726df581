"""Persona handle registry bounded by the per-destination platform ceiling."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from loguru import logger

from aria.channels.attribution import attribute, attribution_length, find_attribution
from aria.channels.utils import MAX_MESSAGE_LENGTH
from aria.channels.base import Destination, Editable, Handle, HasAuthor
from aria.config import MAX_HANDLES_PER_DESTINATION
from aria.core.types import PersonaDefinition
from aria.errors import PlatformError, QuotaExhaustedError

HandleKey = tuple[str, str]

ROTATE_REASON = "Rotating out old persona handle to make room for a new one."


def usable_avatar(avatar: str | None) -> str | None:
    """Only remote URLs can seed a handle avatar; local paths are skipped."""
    if not avatar:
        return None
    if avatar.startswith(("http://", "https://")):
        return avatar
    return None


class PersonaChannelRegistry:
    """Map (destination, persona) to a live handle.

    A key moves from uncached to cached through validation, lookup or
    creation, and back to uncached when the platform reports the handle gone.
    Concurrent lookups of one key share a single in-flight resolution.
    """

    def __init__(self, *, max_handles: int = MAX_HANDLES_PER_DESTINATION) -> None:
        self._max_handles = max_handles
        self._handles: dict[HandleKey, Handle] = {}
        self._inflight: dict[HandleKey, asyncio.Task[Handle | None]] = {}

    @staticmethod
    def key_for(destination: Destination, persona: PersonaDefinition) -> HandleKey:
        return (destination.id, persona.display_name)

    def cached(self, destination: Destination, persona: PersonaDefinition) -> Handle | None:
        return self._handles.get(self.key_for(destination, persona))

    def invalidate(self, destination: Destination, persona: PersonaDefinition) -> None:
        self._handles.pop(self.key_for(destination, persona), None)

    def clear(self) -> None:
        logger.info("registry.clear cached={}", len(self._handles))
        self._handles.clear()

    async def get_handle(self, destination: Destination, persona: PersonaDefinition) -> Handle | None:
        key = self.key_for(destination, persona)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._resolve(key, destination, persona))
            self._inflight[key] = task

            def _done(finished: asyncio.Task[Handle | None]) -> None:
                if self._inflight.get(key) is finished:
                    del self._inflight[key]

            task.add_done_callback(_done)
        return await asyncio.shield(task)

    async def _resolve(self, key: HandleKey, destination: Destination, persona: PersonaDefinition) -> Handle | None:
        cached = self._handles.get(key)
        if cached is not None:
            try:
                await cached.validate()
            except PlatformError as exc:
                self._handles.pop(key, None)
                logger.warning(
                    "registry.stale destination={} persona={} error={}",
                    destination.name,
                    persona.display_name,
                    exc,
                )
            else:
                return cached

        try:
            handles = await destination.list_handles()
            existing = next((handle for handle in handles if handle.name == persona.display_name), None)
            if existing is not None:
                logger.info("registry.reuse destination={} persona={}", destination.name, persona.display_name)
                self._handles[key] = existing
                return existing

            if len(handles) >= self._max_handles:
                await self._rotate(destination, handles)

            handle = await destination.create_handle(persona.display_name, usable_avatar(persona.avatar))
        except (PlatformError, QuotaExhaustedError) as exc:
            logger.warning(
                "registry.unavailable destination={} persona={} error={}",
                destination.name,
                persona.display_name,
                exc,
            )
            return None

        logger.info("registry.created destination={} persona={}", destination.name, persona.display_name)
        self._handles[key] = handle
        return handle

    async def _rotate(self, destination: Destination, handles: Sequence[Handle]) -> None:
        """Delete the oldest handle; raise if the destination is still full afterwards."""
        logger.warning(
            "registry.ceiling destination={} live={} max={}",
            destination.name,
            len(handles),
            self._max_handles,
        )
        oldest = min(handles, key=lambda handle: handle.created_at)
        logger.info("registry.rotate destination={} deleting={}", destination.name, oldest.name)
        await oldest.delete(ROTATE_REASON)
        self._handles.pop((destination.id, oldest.name), None)

        remaining = await destination.list_handles()
        if len(remaining) >= self._max_handles:
            logger.error("registry.rotate.failed destination={} live={}", destination.name, len(remaining))
            raise QuotaExhaustedError(f"{destination.name} still has {len(remaining)} handles after rotation")

    @staticmethod
    def author_for(*, caller: HasAuthor | None = None, reply_to: Editable | None = None) -> HasAuthor | None:
        """Who a delivery is attributed to: the marker on `reply_to`, else the caller."""
        if reply_to is not None:
            recovered = find_attribution(reply_to.content)
            if recovered is not None:
                return recovered
        if caller is not None:
            return caller
        if isinstance(reply_to, HasAuthor):
            return reply_to
        return None

    @staticmethod
    def part_limit(author: HasAuthor | None) -> int:
        """Longest part that still fits one platform message once attributed."""
        return MAX_MESSAGE_LENGTH - attribution_length(author)

    async def send(
        self,
        destination: Destination,
        persona: PersonaDefinition,
        content: str,
        *,
        caller: HasAuthor | None = None,
        reply_to: Editable | None = None,
    ) -> Editable | None:
        """Deliver `content` under the persona, or None when no handle is usable."""
        handle = await self.get_handle(destination, persona)
        if handle is None:
            return None

        author = self.author_for(caller=caller, reply_to=reply_to)
        try:
            return await handle.send(
                attribute(content, author),
                username=persona.display_name,
                avatar_url=usable_avatar(persona.avatar),
            )
        except PlatformError as exc:
            if exc.not_found:
                self.invalidate(destination, persona)
            logger.error(
                "registry.send.failed destination={} persona={} error={}", destination.name, persona.display_name, exc
            )
            return None

    async def edit(
        self,
        destination: Destination,
        message: Editable,
        persona: PersonaDefinition,
        content: str,
        *,
        caller: HasAuthor | None = None,
    ) -> Editable | None:
        """Replace a persona message's content.

        The marker already on the message wins; without one the edit is
        attributed to `caller`.
        """
        if message.handle_id is None:
            logger.warning("registry.edit.skipped message={} reason=not_sent_by_handle", message.id)
            return None

        try:
            handle = await destination.fetch_handle(message.handle_id)
            if handle is None:
                logger.warning("registry.edit.skipped message={} reason=handle_missing", message.id)
                return None
            author = find_attribution(message.content) or caller
            return await handle.edit_message(message.id, attribute(content, author))
        except PlatformError as exc:
            logger.error(
                "registry.edit.failed destination={} persona={} error={}", destination.name, persona.display_name, exc
            )
            return None
