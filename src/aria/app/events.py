"""Outcome models returned to the event-handling layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from aria.channels.base import Editable
from aria.errors import DeliveryError

DeliveryStatus = Literal["delivered", "deferred", "failed"]


@dataclass(frozen=True)
class DeliveryOutcome:
    """What happened to one submitted request."""

    status: DeliveryStatus
    text: str = ""
    messages: tuple[Editable, ...] = ()
    via_persona: bool = False
    retry_after: float = 0.0
    error: DeliveryError | None = None

    @property
    def delivered(self) -> bool:
        return self.status == "delivered"
