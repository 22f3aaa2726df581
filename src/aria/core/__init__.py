"""Orchestration core: queueing, admission and prompt assembly."""

from aria.core.admission import AdmissionController
from aria.core.prompt import ApproximateTokenCounter, PromptAssembler, TokenCounter
from aria.core.queue import WorkQueue
from aria.core.types import (
    AssembledPrompt,
    ConversationTurn,
    PersonaDefinition,
    Role,
    SafetyMode,
    SafetySetting,
)

__all__ = [
    "AdmissionController",
    "ApproximateTokenCounter",
    "AssembledPrompt",
    "ConversationTurn",
    "PersonaDefinition",
    "PromptAssembler",
    "Role",
    "SafetyMode",
    "SafetySetting",
    "TokenCounter",
    "WorkQueue",
]
