"""Shared error hierarchy.

Every error raised by the bot derives from `StickerBotError`. Errors that may
succeed on a later attempt also derive from `TransientError`; errors that will
not also derive from `PermanentError`. Callers that retry key off those two
markers rather than concrete classes.
"""

from __future__ import annotations

from typing import Optional


class StickerBotError(Exception):
    """Base error carrying an optional user-facing message."""

    recoverable = True
    severity = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(StickerBotError):
    """Failure that may succeed when retried (network, session keys, timeouts)."""

    recoverable = True
    severity = "warning"


class PermanentError(StickerBotError):
    """Failure that will not succeed when retried (bad input, bad config)."""

    recoverable = False
    severity = "error"


class ConfigError(PermanentError):
    """Invalid or unreadable configuration."""
