"""Custom exceptions for the generation client layer."""

from __future__ import annotations

_AUTH_MARKERS = ("401", "unauthorized")
_STALE_CONTEXT_MARKERS = (
    "project",
    "404",
    "500",
    "502",
    "503",
    "econnreset",
    "connection reset",
    "socket",
)


class GenerationError(Exception):
    """Base exception for all generation related errors."""


class CredentialError(GenerationError):
    """Raised when the remote service rejects the session cookie."""


class ContextError(GenerationError):
    """Raised when a generation context is missing or no longer valid."""


class GenerationTimeoutError(GenerationError):
    """Raised when a remote call exceeds its time budget."""


class GenerationUnavailableError(GenerationError):
    """Raised when no generation client is configured for real credentials."""


class ReferenceLimitError(GenerationError):
    """Raised when more reference images than allowed are attached to a category."""


class PromptFileError(GenerationError):
    """Raised when an uploaded prompt file cannot be decoded."""


def is_auth_failure(message: str | None) -> bool:
    """Return True when an error message points at an expired or invalid cookie."""

    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in _AUTH_MARKERS)


def is_stale_context_failure(message: str | None) -> bool:
    """Return True when the cached generation context should be discarded.

    Covers missing/invalid project errors, transient server errors and
    connection resets.
    """

    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in _STALE_CONTEXT_MARKERS)
