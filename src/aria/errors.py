"""Application-level exception types for Aria."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class AriaError(Exception):
    """Base exception for Aria."""


class ConfigurationError(AriaError):
    """Base exception for configuration and startup validation errors."""


class MissingTokenError(ConfigurationError):
    """Raised when the Discord bot token is missing."""


class ModelNotConfiguredError(ConfigurationError):
    """Raised when model configuration is missing."""


class GenerationError(AriaError):
    """Base exception for failures while producing a reply."""


class BackendStatusError(GenerationError):
    """Raised when the backend answers with an HTTP error status."""

    def __init__(self, status: int, detail: str = "") -> None:
        super().__init__(detail or f"backend returned HTTP {status}")
        self.status = status
        self.detail = detail


class BackendClientError(BackendStatusError):
    """The backend rejected the request (4xx)."""


class BackendServerError(BackendStatusError):
    """The backend is unavailable or failed (5xx)."""


class BlockedResponseError(GenerationError):
    """The backend returned an empty result, usually a content-policy block."""


class PlatformError(AriaError):
    """A chat-platform call failed (missing permission, deleted resource, HTTP error)."""

    def __init__(self, message: str, *, not_found: bool = False) -> None:
        super().__init__(message)
        self.not_found = not_found


class QuotaExhaustedError(AriaError):
    """Raised when no persona handle slot could be freed at a destination."""


class ErrorKind(StrEnum):
    CLIENT = "client"
    SERVER = "server"
    BLOCKED = "blocked"
    QUOTA = "quota"
    UNEXPECTED = "unexpected"


_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.CLIENT: "The model returned a client error (HTTP {status}). This could be an issue with the request.",
    ErrorKind.SERVER: "The model returned a server error (HTTP {status}). The service may be down.",
    ErrorKind.BLOCKED: (
        "Oops! It seems my response was blocked, likely for safety reasons. "
        "You could try rephrasing your last message or resetting the conversation."
    ),
    ErrorKind.QUOTA: "Could not free a persona slot in this channel.",
    ErrorKind.UNEXPECTED: "An unexpected error occurred while generating a response.",
}


@dataclass(frozen=True)
class DeliveryError:
    """Structured failure handed to whatever renders user-facing notices."""

    kind: ErrorKind
    detail: str
    status: int | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> DeliveryError:
        if isinstance(exc, BackendClientError):
            return cls(ErrorKind.CLIENT, str(exc), exc.status)
        if isinstance(exc, BackendServerError):
            return cls(ErrorKind.SERVER, str(exc), exc.status)
        if isinstance(exc, BackendStatusError):
            kind = ErrorKind.SERVER if exc.status >= 500 else ErrorKind.CLIENT
            return cls(kind, str(exc), exc.status)
        if isinstance(exc, BlockedResponseError):
            return cls(ErrorKind.BLOCKED, str(exc))
        if isinstance(exc, QuotaExhaustedError):
            return cls(ErrorKind.QUOTA, str(exc))
        return cls(ErrorKind.UNEXPECTED, f"{type(exc).__name__}: {exc}")

    def user_message(self) -> str:
        return _MESSAGES[self.kind].format(status=self.status if self.status is not None else "?")
