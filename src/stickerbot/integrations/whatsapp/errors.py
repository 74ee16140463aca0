"""WhatsApp integration error hierarchy.

Composes the shared transient/permanent markers so retry decisions stay
consistent between the session layer and the dispatcher.
"""

from __future__ import annotations

from typing import Optional

from ...core.exceptions import PermanentError, StickerBotError, TransientError


class WhatsAppError(StickerBotError):
    """Base WhatsApp integration error."""


class CredentialLoadError(WhatsAppError, PermanentError):
    """Credential material is missing, corrupt or unreadable."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity


class ConnectivityLostError(WhatsAppError, TransientError):
    """The session closed; `is_final` marks a de-authorized session."""

    def __init__(
        self,
        message: str,
        *,
        reason: Optional[int] = None,
        is_final: bool = False,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.is_final = is_final
        if is_final:
            self.recoverable = False
            self.severity = "error"


class SessionTerminatedError(WhatsAppError, PermanentError):
    """The session was logged out and will not be rebuilt."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity


class MediaDownloadError(WhatsAppError, TransientError):
    """Media bytes could not be fetched or decrypted."""


class SendFailureError(WhatsAppError, TransientError):
    """A reply could not be delivered."""
