"""Generative backend adapters."""

from aria.llm.backend import Backend, BackendResult, FallbackBackend, OpenAIBackend, collapse_alternation

__all__ = ["Backend", "BackendResult", "FallbackBackend", "OpenAIBackend", "collapse_alternation"]
