"""Value types shared by the orchestration core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    FUNCTION = "function"


class SafetyMode(StrEnum):
    SFW = "sfw"
    NSFW = "nsfw"


@dataclass(frozen=True)
class ConversationTurn:
    """One message of conversation history, as seen by the backend."""

    speaker: str
    role: Role
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    token_cost: int | None = None
    media: tuple[dict[str, Any], ...] = ()
    function_name: str | None = None
    message_id: str | None = None


@dataclass(frozen=True)
class PersonaDefinition:
    """Presentational identity a reply is delivered under."""

    display_name: str
    personality: str = ""
    description: str = ""
    scenario: str = ""
    avatar: str | None = None


@dataclass(frozen=True)
class SafetySetting:
    category: str
    threshold: str


@dataclass(frozen=True)
class AssembledPrompt:
    system_instruction: str
    turns: tuple[ConversationTurn, ...]
    safety_profile: tuple[SafetySetting, ...]
    instruction_cost: int = 0
    turns_cost: int = 0

    @property
    def total_cost(self) -> int:
        return self.instruction_cost + self.turns_cost
