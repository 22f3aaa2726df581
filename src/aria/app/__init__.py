"""Application wiring."""

from aria.app.bootstrap import build_backend, build_orchestrator
from aria.app.events import DeliveryOutcome
from aria.app.orchestrator import Orchestrator

__all__ = ["DeliveryOutcome", "Orchestrator", "build_backend", "build_orchestrator"]
