"""Aria - persona replies for Discord, one queue at a time."""

from aria.app import DeliveryOutcome, Orchestrator, build_orchestrator
from aria.core import AdmissionController, PromptAssembler, WorkQueue

__version__ = "0.1.0"

__all__ = [
    "AdmissionController",
    "DeliveryOutcome",
    "Orchestrator",
    "PromptAssembler",
    "WorkQueue",
    "build_orchestrator",
]
