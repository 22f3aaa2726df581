"""Attribution markers naming the caller who triggered a generation."""

from __future__ import annotations

import re

from aria.channels.base import Caller, HasAuthor

MARKER_PREFIX = "[Generated by"
USER_URL = "https://discord.com/users/{user_id}"

ATTRIBUTION_RE = re.compile(r"\[Generated by (?P<name>.*?)\]\(<https://discord\.com/users/(?P<user_id>\d+)>\)")
_STRIP_RE = re.compile(r"\n?" + ATTRIBUTION_RE.pattern)


def format_attribution(author: HasAuthor) -> str:
    url = USER_URL.format(user_id=author.author_id)
    return f"[Generated by {author.author_name}](<{url}>)"


def find_attribution(text: str) -> Caller | None:
    if MARKER_PREFIX not in text:
        return None
    match = ATTRIBUTION_RE.search(text)
    if match is None:
        return None
    return Caller(author_id=match.group("user_id"), author_name=match.group("name"))


def strip_attribution(text: str) -> str:
    return _STRIP_RE.sub("", text)


def attribute(content: str, author: HasAuthor | None) -> str:
    """Append the marker for `author` unless `content` already carries one."""
    if author is None or MARKER_PREFIX in content:
        return content
    return f"{content}\n{format_attribution(author)}"


def attribution_length(author: HasAuthor | None) -> int:
    """Characters `attribute` adds for `author`."""
    if author is None:
        return 0
    return len(format_attribution(author)) + 1
