"""Channel utility helpers."""

from __future__ import annotations

import re

# Discord rejects message content above 2000 characters.
MAX_MESSAGE_LENGTH = 2000

FENCE = "```"
FENCE_CLOSE = "\n```"


def _toggle(fence: str | None, line: str) -> str | None:
    if not line.startswith(FENCE):
        return fence
    return None if fence else line.strip()


def _close(part: str, fence: str | None) -> str:
    return part + FENCE_CLOSE if fence else part


def smart_split(text: str, *, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split on line boundaries, closing and reopening code fences across parts.

    Every part, including the closing fence added to it, is at most `limit`
    characters. A line longer than a part is cut into pieces, and a fence
    opener that would end a part is moved to the start of the next one.
    """
    if len(text) <= limit:
        return [text]

    parts: list[str] = []
    current = ""
    has_body = False
    fence: str | None = None

    for line in text.split("\n"):
        after = _toggle(fence, line)
        reserve = len(FENCE_CLOSE) if after else 0
        candidate = f"{current}\n{line}" if has_body else current + line
        if len(candidate) + reserve <= limit:
            current, has_body, fence = candidate, True, after
            continue

        if has_body:
            head, _, last = current.rpartition("\n")
            if fence is not None and last.strip() == fence:
                if head:
                    parts.append(head)
            else:
                parts.append(_close(current, fence))
                if fence is not None and after is None:
                    # the closing fence was just added to the flushed part
                    current, has_body, fence = "", False, None
                    continue
            current, has_body = (f"{fence}\n" if fence else ""), False

        candidate = current + line
        if len(candidate) + reserve <= limit:
            current, has_body, fence = candidate, True, after
            continue

        prefix = current
        room = limit - len(prefix) - (len(FENCE_CLOSE) if fence or after else 0)
        if room < 1:
            raise ValueError(f"limit {limit} leaves no room for content inside code fences")
        pieces = [line[index : index + room] for index in range(0, len(line), room)]
        parts.extend(_close(prefix + piece, fence) for piece in pieces[:-1])
        current, has_body, fence = prefix + pieces[-1], True, after

    parts.append(current)
    return [part for part in parts if part]


def strip_name_prefix(text: str, name: str) -> str:
    """Drop a leading `Name:` echo the backend sometimes adds."""
    return re.sub(rf"^{re.escape(name)}:\s*", "", text, flags=re.IGNORECASE)


def resolve_proxy(explicit_proxy: str | None) -> tuple[str | None, str]:
    if explicit_proxy:
        return explicit_proxy, "explicit"

    # Proxy usage must be opt-in; ignore ambient env vars and OS proxy settings.
    return None, "none"
