from __future__ import annotations


class CompanionBotError(Exception):
    """Base class for errors raised by the companion bot core."""


class ContextStoreError(CompanionBotError):
    """Persistence failed (store unavailable, constraint violation, bad row)."""


class ProviderError(CompanionBotError):
    """The completion provider failed or returned an unusable payload."""

    kind = "error"


class ProviderTimeoutError(ProviderError):
    kind = "timeout"


class ListeningModeError(CompanionBotError, ValueError):
    """Invalid listening mode name or threshold."""
