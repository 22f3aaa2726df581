"""Caller-facing orchestration of admission, inference and delivery."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Literal

from loguru import logger

from aria.app.events import DeliveryOutcome
from aria.channels.attribution import find_attribution
from aria.channels.base import Destination, Editable, HasAuthor, Sendable
from aria.channels.registry import PersonaChannelRegistry
from aria.channels.utils import smart_split, strip_name_prefix
from aria.config import Settings
from aria.core.admission import AdmissionController
from aria.core.prompt import ApproximateTokenCounter, PromptAssembler
from aria.core.queue import WorkQueue
from aria.core.types import ConversationTurn, PersonaDefinition, Role, SafetyMode
from aria.errors import BlockedResponseError, DeliveryError, ErrorKind, PlatformError, QuotaExhaustedError
from aria.llm.backend import Backend
from aria.logging_utils import bind_destination

OutcomeCallback = Callable[[DeliveryOutcome], Awaitable[None]]

CONTINUE_PROMPT = "Continue your last message from exactly where it left off."


@dataclass
class _Request:
    destination: Destination
    persona: PersonaDefinition | None
    caller: HasAuthor
    history: Sequence[ConversationTurn]
    mode: SafetyMode
    reply: Sendable | None = None
    reply_to: Editable | None = None
    edit_target: Editable | None = None
    kind: Literal["reply", "reroll"] = "reply"
    on_deferred: OutcomeCallback | None = field(default=None, repr=False)


class Orchestrator:
    """Gate callers, bound backend concurrency and deliver replies under personas."""

    def __init__(
        self,
        *,
        settings: Settings,
        backend: Backend,
        assembler: PromptAssembler | None = None,
        queue: WorkQueue | None = None,
        admission: AdmissionController | None = None,
        registry: PersonaChannelRegistry | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.assembler = assembler or PromptAssembler(
            ApproximateTokenCounter(),
            settings.token_limit,
            assistant_name=settings.assistant_name,
        )
        self.queue = queue or WorkQueue(settings.inference_parallelism)
        self.admission = admission or AdmissionController(
            limit=settings.rate_limit,
            restricted_limit=settings.resolved_restricted_limit,
            restricted_ids=settings.restricted_identities,
            window_seconds=settings.rate_window_seconds,
        )
        self.registry = registry or PersonaChannelRegistry()
        self._active_generations = 0

    @property
    def active_generations(self) -> int:
        return self._active_generations

    @property
    def default_mode(self) -> SafetyMode:
        return SafetyMode.SFW if self.settings.safe_mode_default else SafetyMode.NSFW

    def start(self) -> None:
        self.admission.start()

    async def stop(self, *, poll_interval: float = 0.5) -> None:
        await self.wait_idle(poll_interval=poll_interval)
        self.admission.shutdown()
        self.registry.clear()

    async def wait_idle(self, *, poll_interval: float = 0.5) -> None:
        """Return once no backend call is in flight; nothing is cancelled."""
        while self._active_generations > 0 or self.queue.pending > 0:
            logger.info("orchestrator.draining active={} pending={}", self._active_generations, self.queue.pending)
            await asyncio.sleep(poll_interval)

    async def submit(
        self,
        destination: Destination,
        persona: PersonaDefinition | None,
        caller: HasAuthor,
        history: Sequence[ConversationTurn],
        *,
        mode: SafetyMode | None = None,
        reply: Sendable | None = None,
        reply_to: Editable | None = None,
        on_deferred: OutcomeCallback | None = None,
    ) -> DeliveryOutcome:
        """Generate a reply to `history` and deliver it to `destination`.

        A throttled caller gets a `deferred` outcome immediately; the work then
        runs after the caller's window resets and its outcome goes to
        `on_deferred`.
        """
        request = _Request(
            destination=destination,
            persona=persona,
            caller=caller,
            history=history,
            mode=mode or self.default_mode,
            reply=reply,
            reply_to=reply_to,
            on_deferred=on_deferred,
        )
        return await self._admit(request)

    async def reroll(
        self,
        destination: Destination,
        message: Editable,
        persona: PersonaDefinition,
        caller: HasAuthor,
        history: Sequence[ConversationTurn],
        *,
        mode: SafetyMode | None = None,
        on_deferred: OutcomeCallback | None = None,
    ) -> DeliveryOutcome:
        """Regenerate and replace a persona message in place."""
        request = _Request(
            destination=destination,
            persona=persona,
            caller=caller,
            history=history,
            mode=mode or self.default_mode,
            edit_target=message,
            kind="reroll",
            on_deferred=on_deferred,
        )
        return await self._admit(request)

    async def continue_reply(
        self,
        destination: Destination,
        message: Editable,
        persona: PersonaDefinition | None,
        caller: HasAuthor,
        history: Sequence[ConversationTurn],
        *,
        mode: SafetyMode | None = None,
        reply: Sendable | None = None,
        on_deferred: OutcomeCallback | None = None,
    ) -> DeliveryOutcome:
        """Extend a delivered persona message with a new one that picks up where it stopped.

        `history` ends with `message`; a user turn asking to continue is added
        after it, and the result goes out as a fresh message attributed like
        `message`.
        """
        turn = ConversationTurn(speaker=caller.author_name, role=Role.USER, text=CONTINUE_PROMPT)
        request = _Request(
            destination=destination,
            persona=persona,
            caller=caller,
            history=[*history, turn],
            mode=mode or self.default_mode,
            reply=reply,
            reply_to=message,
            on_deferred=on_deferred,
        )
        return await self._admit(request)

    async def _admit(self, request: _Request) -> DeliveryOutcome:
        identity = request.caller.author_id
        if self.admission.try_admit(identity):
            return await self._run(request)

        retry_after = self.admission.time_until_reset(identity)

        async def _continuation() -> None:
            outcome = await self._run(request)
            if request.on_deferred is not None:
                await request.on_deferred(outcome)

        self.admission.defer_until_reset(identity, _continuation)
        return DeliveryOutcome(status="deferred", retry_after=retry_after)

    async def _run(self, request: _Request) -> DeliveryOutcome:
        bind_destination(request.destination.id)
        try:
            text = await self.queue.submit(
                self._generate,
                request.history,
                request.caller.author_name,
                request.persona,
                request.mode,
            )
        except Exception as exc:
            error = DeliveryError.from_exception(exc)
            logger.error("orchestrator.generate.failed kind={} detail={}", error.kind, error.detail)
            return DeliveryOutcome(status="failed", error=error)

        if request.kind == "reroll":
            return await self._edit(request, text)
        return await self._deliver(request, text)

    async def _generate(
        self,
        history: Sequence[ConversationTurn],
        caller_name: str,
        persona: PersonaDefinition | None,
        mode: SafetyMode,
    ) -> str:
        self._active_generations += 1
        try:
            prompt = self.assembler.assemble(history, caller_name, persona, mode)
            result = await self.backend.generate(prompt, persona=persona, mode=mode)
        finally:
            self._active_generations -= 1

        text = result.text()
        if not text.strip():
            raise BlockedResponseError(f"empty response (finish_reason={result.finish_reason})")
        own_name = persona.display_name if persona is not None else self.settings.assistant_name
        return strip_name_prefix(text, own_name)

    async def _deliver(self, request: _Request, text: str) -> DeliveryOutcome:
        author = self.registry.author_for(caller=request.caller, reply_to=request.reply_to)
        sent: list[Editable] = []
        via_persona = False
        try:
            for part in smart_split(text, limit=self.registry.part_limit(author)):
                message = None
                if request.persona is not None:
                    message = await self.registry.send(
                        request.destination,
                        request.persona,
                        part,
                        caller=request.caller,
                        reply_to=request.reply_to,
                    )
                if message is not None:
                    via_persona = True
                elif request.reply is not None:
                    message = await request.reply.reply(part, persona=request.persona, author=author)
                else:
                    raise QuotaExhaustedError("no persona handle and no fallback reply target")
                sent.append(message)
        except (PlatformError, QuotaExhaustedError) as exc:
            error = DeliveryError.from_exception(exc)
            logger.error("orchestrator.deliver.failed kind={} detail={}", error.kind, error.detail)
            return DeliveryOutcome(status="failed", text=text, messages=tuple(sent), error=error)

        logger.info("orchestrator.delivered parts={} via_persona={}", len(sent), via_persona)
        return DeliveryOutcome(status="delivered", text=text, messages=tuple(sent), via_persona=via_persona)

    async def _edit(self, request: _Request, text: str) -> DeliveryOutcome:
        if request.edit_target is None or request.persona is None:
            raise ValueError("reroll needs a persona message to edit")
        author = find_attribution(request.edit_target.content) or request.caller
        content = smart_split(text, limit=self.registry.part_limit(author))[0]
        edited = await self.registry.edit(
            request.destination,
            request.edit_target,
            request.persona,
            content,
            caller=request.caller,
        )
        if edited is None:
            error = DeliveryError(ErrorKind.UNEXPECTED, "could not edit the persona message")
            return DeliveryOutcome(status="failed", text=text, error=error)
        return DeliveryOutcome(status="delivered", text=text, messages=(edited,), via_persona=True)
