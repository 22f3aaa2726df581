"""Runtime bootstrap helpers."""

from __future__ import annotations

from aria.app.orchestrator import Orchestrator
from aria.config import Settings, load_settings
from aria.llm.backend import Backend, FallbackBackend, OpenAIBackend


def build_backend(settings: Settings) -> Backend:
    """The configured backend, wrapped with the fallback model when one is set."""
    primary = OpenAIBackend.from_settings(settings)
    if not settings.fallback_model:
        return primary
    fallback = OpenAIBackend(
        model=settings.fallback_model,
        api_key=settings.fallback_api_key or settings.api_key,
        api_base=settings.fallback_api_base,
        timeout_seconds=settings.model_timeout_seconds,
        assistant_name=settings.assistant_name,
        safety_field=settings.safety_settings_field if settings.fallback_api_base else None,
    )
    return FallbackBackend(primary, fallback)


def build_orchestrator(
    settings: Settings | None = None,
    *,
    backend: Backend | None = None,
    model: str | None = None,
    token_limit: int | None = None,
) -> Orchestrator:
    """Build an orchestrator from settings, with optional CLI overrides."""
    if settings is None:
        settings = load_settings()
    updates: dict[str, object] = {}
    if model:
        updates["model"] = model
    if token_limit is not None:
        updates["token_limit"] = token_limit
    if updates:
        settings = settings.model_copy(update=updates)
    return Orchestrator(settings=settings, backend=backend or build_backend(settings))
