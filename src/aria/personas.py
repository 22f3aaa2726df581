"""Persona catalogue loaded from YAML definitions."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

import yaml
from loguru import logger

from aria.core.types import PersonaDefinition

PERSONA_SUFFIXES = (".yaml", ".yml")
PERSONA_FIELDS = frozenset({"name", "personality", "description", "scenario", "avatar"})


def load_personas(path: Path) -> list[PersonaDefinition]:
    """Load personas from one YAML file or every YAML file in a directory.

    A file may hold a single mapping or a list of mappings. Unreadable or
    malformed entries are skipped.
    """
    if path.is_dir():
        files = sorted(item for item in path.iterdir() if item.suffix.lower() in PERSONA_SUFFIXES)
    elif path.is_file():
        files = [path]
    else:
        logger.warning("personas.missing path={}", path)
        return []

    personas: list[PersonaDefinition] = []
    for file in files:
        personas.extend(_read_file(file))
    return personas


def _read_file(path: Path) -> list[PersonaDefinition]:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("personas.unreadable path={} error={}", path, exc)
        return []

    entries = payload if isinstance(payload, list) else [payload]
    personas = [persona for entry in entries if (persona := _parse_entry(entry)) is not None]
    if len(personas) != len(entries):
        logger.warning("personas.skipped path={} skipped={}", path, len(entries) - len(personas))
    return personas


def _parse_entry(entry: object) -> PersonaDefinition | None:
    if not isinstance(entry, dict):
        return None
    data = {str(key).lower(): value for key, value in entry.items()}
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    if any(key not in PERSONA_FIELDS for key in data):
        return None
    avatar = data.get("avatar")
    return PersonaDefinition(
        display_name=name.strip(),
        personality=str(data.get("personality") or ""),
        description=str(data.get("description") or ""),
        scenario=str(data.get("scenario") or ""),
        avatar=str(avatar) if avatar else None,
    )


class PersonaCatalog:
    """Known personas plus the persona currently active in each channel."""

    def __init__(self, personas: Iterable[PersonaDefinition] = (), *, assistant_name: str = "Aria") -> None:
        self._assistant_name = assistant_name
        self._personas: dict[str, PersonaDefinition] = {}
        self._active: dict[str, str] = {}
        self.replace(personas)

    @classmethod
    def from_path(cls, path: Path | None, *, assistant_name: str = "Aria") -> PersonaCatalog:
        personas = load_personas(path) if path is not None else []
        return cls(personas, assistant_name=assistant_name)

    def replace(self, personas: Iterable[PersonaDefinition]) -> None:
        self._personas = {
            persona.display_name.casefold(): persona
            for persona in personas
            if persona.display_name != self._assistant_name
        }
        self._active = {channel: name for channel, name in self._active.items() if name in self._personas}
        logger.info("personas.loaded count={}", len(self._personas))

    def names(self) -> list[str]:
        return sorted(persona.display_name for persona in self._personas.values())

    def get(self, name: str) -> PersonaDefinition | None:
        return self._personas.get(name.casefold())

    def activate(self, channel_id: str, name: str) -> PersonaDefinition | None:
        persona = self.get(name)
        if persona is None:
            return None
        self._active[channel_id] = name.casefold()
        return persona

    def deactivate(self, channel_id: str) -> None:
        self._active.pop(channel_id, None)

    def active(self, channel_id: str) -> PersonaDefinition | None:
        key = self._active.get(channel_id)
        return self._personas.get(key) if key is not None else None

    def __len__(self) -> int:
        return len(self._personas)
