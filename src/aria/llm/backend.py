"""Generative backend interface and the OpenAI-compatible adapter."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Any, Protocol

import openai
from loguru import logger
from openai import AsyncOpenAI

from aria.config import Settings
from aria.core.prompt import render_turn
from aria.core.types import AssembledPrompt, ConversationTurn, PersonaDefinition, Role, SafetyMode, SafetySetting
from aria.errors import BackendClientError, BackendServerError, GenerationError


@dataclass(frozen=True)
class BackendResult:
    content: str
    finish_reason: str | None = None

    def text(self) -> str:
        return self.content


class Backend(Protocol):
    async def generate(
        self,
        prompt: AssembledPrompt,
        *,
        persona: PersonaDefinition | None,
        mode: SafetyMode,
    ) -> BackendResult: ...


def collapse_alternation(turns: Sequence[ConversationTurn]) -> list[ConversationTurn]:
    """Merge consecutive same-role turns, starting at the first user turn."""
    start = next((index for index, turn in enumerate(turns) if turn.role is Role.USER), None)
    if start is None:
        return []
    merged: list[ConversationTurn] = []
    for turn in turns[start:]:
        if merged and merged[-1].role is turn.role:
            previous = merged[-1]
            merged[-1] = replace(
                previous,
                text=f"{previous.text}\n{turn.speaker}: {turn.text}",
                media=previous.media + turn.media,
                token_cost=None,
            )
        else:
            merged.append(turn)
    return merged


def safety_payload(profile: Sequence[SafetySetting]) -> list[dict[str, str]]:
    return [{"category": setting.category, "threshold": setting.threshold} for setting in profile]


def raise_for_status(status: int, detail: str) -> None:
    if 400 <= status < 500:
        raise BackendClientError(status, detail)
    if status >= 500:
        raise BackendServerError(status, detail)
    raise GenerationError(detail)


class OpenAIBackend:
    """Chat-completions backend for OpenAI and compatible servers."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout_seconds: float | None = None,
        assistant_name: str = "Assistant",
        strict_alternation: bool = False,
        safety_field: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._safety_field = safety_field
        self._timeout_seconds = timeout_seconds
        self._assistant_name = assistant_name
        self._strict_alternation = strict_alternation
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=api_base)

    @classmethod
    def from_settings(cls, settings: Settings) -> OpenAIBackend:
        return cls(
            model=settings.require_model(),
            api_key=settings.api_key,
            api_base=settings.api_base,
            timeout_seconds=settings.model_timeout_seconds,
            assistant_name=settings.assistant_name,
            # The official endpoint rejects unknown request fields.
            safety_field=settings.safety_settings_field if settings.api_base else None,
        )

    def build_messages(self, prompt: AssembledPrompt, persona: PersonaDefinition | None) -> list[dict[str, Any]]:
        own_name = persona.display_name if persona is not None else self._assistant_name
        turns = collapse_alternation(prompt.turns) if self._strict_alternation else list(prompt.turns)
        messages: list[dict[str, Any]] = [{"role": "system", "content": prompt.system_instruction}]
        for turn in turns:
            text = render_turn(turn, own_name)
            if turn.role is Role.ASSISTANT:
                messages.append({"role": "assistant", "content": text})
            elif turn.role is Role.FUNCTION:
                if turn.function_name:
                    messages.append({"role": "function", "name": turn.function_name, "content": turn.text})
            elif turn.role is Role.USER:
                parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
                parts.extend(_image_part(item) for item in turn.media if item.get("url"))
                messages.append({"role": "user", "content": parts})
        return messages

    async def generate(
        self,
        prompt: AssembledPrompt,
        *,
        persona: PersonaDefinition | None,
        mode: SafetyMode,
    ) -> BackendResult:
        messages = self.build_messages(prompt, persona)
        extra: dict[str, Any] = {}
        if self._safety_field and prompt.safety_profile:
            extra["extra_body"] = {self._safety_field: safety_payload(prompt.safety_profile)}
        logger.info(
            "backend.request model={} mode={} messages={} prompt_tokens~{}",
            self._model,
            mode,
            len(messages),
            prompt.total_cost,
        )
        try:
            async with asyncio.timeout(self._timeout_seconds):
                response = await self._client.chat.completions.create(model=self._model, messages=messages, **extra)
        except TimeoutError as exc:
            raise BackendServerError(504, "backend call timed out") from exc
        except openai.APIStatusError as exc:
            raise_for_status(exc.status_code, exc.message)
        except openai.APITimeoutError as exc:
            raise BackendServerError(504, "backend call timed out") from exc
        except openai.APIConnectionError as exc:
            raise BackendServerError(503, f"backend unreachable: {exc}") from exc

        if not response.choices:
            return BackendResult(content="", finish_reason="empty")
        choice = response.choices[0]
        return BackendResult(content=choice.message.content or "", finish_reason=choice.finish_reason)


class FallbackBackend:
    """Ask `primary` first and `fallback` when the primary call fails.

    If both fail, the primary's error is raised.
    """

    def __init__(self, primary: Backend, fallback: Backend) -> None:
        self._primary = primary
        self._fallback = fallback

    async def generate(
        self,
        prompt: AssembledPrompt,
        *,
        persona: PersonaDefinition | None,
        mode: SafetyMode,
    ) -> BackendResult:
        try:
            return await self._primary.generate(prompt, persona=persona, mode=mode)
        except GenerationError as exc:
            logger.warning("backend.fallback error={}", exc)
            try:
                return await self._fallback.generate(prompt, persona=persona, mode=mode)
            except GenerationError as fallback_exc:
                logger.error("backend.fallback.failed error={}", fallback_exc)
                raise exc from fallback_exc


def _image_part(item: dict[str, Any]) -> dict[str, Any]:
    return {"type": "image_url", "image_url": {"url": item["url"]}}
