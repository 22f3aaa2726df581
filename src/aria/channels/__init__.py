"""Chat-platform adapters and persona delivery."""

from aria.channels.base import Caller, Destination, Editable, Handle, HasAuthor, Sendable
from aria.channels.registry import PersonaChannelRegistry

__all__ = [
    "Caller",
    "Destination",
    "Editable",
    "Handle",
    "HasAuthor",
    "PersonaChannelRegistry",
    "Sendable",
]
