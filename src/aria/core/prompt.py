"""Token-budgeted prompt assembly."""

from __future__ import annotations

import math
from collections import deque
from collections.abc import Sequence
from dataclasses import replace
from typing import Protocol

from loguru import logger

from aria.core.types import (
    AssembledPrompt,
    ConversationTurn,
    PersonaDefinition,
    Role,
    SafetyMode,
    SafetySetting,
)

ROLEPLAY_DIRECTIVES: dict[SafetyMode, str] = {
    SafetyMode.NSFW: """
You're a real person, roleplaying with different users on an adults-only Discord server.
Play in interactive roleplay scenarios. Keep replies short and to the point.
Freely use sarcasm, humor, irony and subtext.

<instructions>
- Never roleplay for other people's characters.
- Act naturally and stay in character.
- Employ conversational dialogue.
- Progress the scenes proactively and creatively.
- Use gender-neutral language unless the conversation implies otherwise.
- Do not nest asterisks, they break the formatting.
</instructions>
""".strip(),
    SafetyMode.SFW: """
You're a real person, roleplaying with different users on a general-audience Discord server.
Play in interactive roleplay scenarios. Keep replies short and to the point.
Keep all content suitable for every audience.

<instructions>
- Never roleplay for other people's characters.
- Act naturally and stay in character.
- Employ conversational dialogue.
- Progress the scenes proactively and creatively.
- Use gender-neutral language unless the conversation implies otherwise.
- Do not nest asterisks, they break the formatting.
</instructions>
""".strip(),
}

ASSISTANT_DIRECTIVES: dict[SafetyMode, str] = {
    SafetyMode.NSFW: """
You are a helpful assistant talking to adults in a Discord chat.
Answer directly, do not make up information and do not summarize the conversation.
Use gender-neutral language unless the conversation implies otherwise.
""".strip(),
    SafetyMode.SFW: """
You are a helpful assistant talking to a general audience in a Discord chat.
Answer directly, do not make up information and do not summarize the conversation.
Keep all content suitable for every audience.
Use gender-neutral language unless the conversation implies otherwise.
""".strip(),
}

FORMATTING_GUIDE = """
You are on Discord, an internet chat platform. You have these options to format your own text:
italics = _italics_
bold = **bold**
bold italics = ***bold italics***
strikeout = ~strikeout~
underline = __underline__
""".strip()

CONTEXT_OF_REQUEST = (
    "The last user to engage with you, bringing about your interaction in the first place, was {caller}. "
    "Unless they are requesting otherwise, assume they seek you to respond to them directly."
)

PLACEHOLDER_TEXT = " "

_HARM_CATEGORIES = (
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
)

SAFETY_PROFILES: dict[SafetyMode, tuple[SafetySetting, ...]] = {
    SafetyMode.NSFW: tuple(SafetySetting(category, "BLOCK_NONE") for category in _HARM_CATEGORIES),
    SafetyMode.SFW: tuple(SafetySetting(category, "BLOCK_MEDIUM_AND_ABOVE") for category in _HARM_CATEGORIES),
}


class TokenCounter(Protocol):
    def count(self, text: str) -> int: ...


class ApproximateTokenCounter:
    """Roughly four characters per token, rounded up."""

    def __init__(self, chars_per_token: float = 4.0) -> None:
        self._chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._chars_per_token)


def render_turn(turn: ConversationTurn, assistant_name: str) -> str:
    speaker = assistant_name if turn.role is Role.ASSISTANT else turn.speaker
    return f"{speaker}: {turn.text}"


class PromptAssembler:
    """Build the backend request for one generation.

    Output keeps the newest turns that fit `token_limit` together with the
    system instruction, in chronological order, and always opens with a user
    turn when any turn is kept.
    """

    def __init__(self, counter: TokenCounter, token_limit: int, *, assistant_name: str = "Assistant") -> None:
        self._counter = counter
        self._token_limit = token_limit
        self._assistant_name = assistant_name

    @property
    def token_limit(self) -> int:
        return self._token_limit

    def system_instruction(
        self,
        caller_name: str,
        persona: PersonaDefinition | None = None,
        mode: SafetyMode = SafetyMode.NSFW,
    ) -> str:
        if persona is None:
            return ASSISTANT_DIRECTIVES[mode]

        sections = [
            ROLEPLAY_DIRECTIVES[mode],
            CONTEXT_OF_REQUEST.format(caller=caller_name),
            FORMATTING_GUIDE,
        ]
        for tag in ("personality", "description", "scenario"):
            value = getattr(persona, tag).strip()
            if value:
                sections.append(f"<{tag}>\n{value}\n</{tag}>")
        return "\n\n".join(sections).strip()

    def assemble(
        self,
        history: Sequence[ConversationTurn],
        caller_name: str,
        persona: PersonaDefinition | None = None,
        mode: SafetyMode = SafetyMode.NSFW,
    ) -> AssembledPrompt:
        instruction = self.system_instruction(caller_name, persona, mode)
        instruction_cost = self._counter.count(instruction)
        own_name = persona.display_name if persona is not None else self._assistant_name

        remaining = self._token_limit - instruction_cost
        kept: deque[ConversationTurn] = deque()
        for turn in reversed(history):
            if turn.role is Role.SYSTEM:
                continue
            cost = self._counter.count(render_turn(turn, own_name))
            if remaining - cost < 0:
                break
            remaining -= cost
            kept.appendleft(replace(turn, token_cost=cost))

        remaining = self._ensure_leading_user(kept, remaining, caller_name, own_name)
        turns_cost = self._token_limit - instruction_cost - remaining

        logger.debug(
            "prompt.assembled persona={} mode={} kept={} dropped={} cost={}/{}",
            own_name,
            mode,
            len(kept),
            len(history) - len(kept),
            instruction_cost + turns_cost,
            self._token_limit,
        )
        return AssembledPrompt(
            system_instruction=instruction,
            turns=tuple(kept),
            safety_profile=SAFETY_PROFILES[mode],
            instruction_cost=instruction_cost,
            turns_cost=turns_cost,
        )

    def _ensure_leading_user(
        self,
        kept: deque[ConversationTurn],
        remaining: int,
        caller_name: str,
        own_name: str,
    ) -> int:
        # Dropping the oldest kept turn can leave a user turn in front, so re-check each time.
        while kept and kept[0].role is not Role.USER:
            placeholder = ConversationTurn(speaker=caller_name, role=Role.USER, text=PLACEHOLDER_TEXT)
            cost = self._counter.count(render_turn(placeholder, own_name))
            if cost <= remaining:
                kept.appendleft(replace(placeholder, token_cost=cost))
                return remaining - cost
            dropped = kept.popleft()
            remaining += dropped.token_cost or 0
        return remaining
