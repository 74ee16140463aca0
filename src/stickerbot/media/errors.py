from __future__ import annotations

from typing import Optional

from ..core.exceptions import PermanentError


class MediaTransformError(PermanentError):
    """Base error for media conversion failures."""


class EmptyPayloadError(MediaTransformError):
    """Media buffer is empty."""

    def __init__(self, message: str = "media payload is empty") -> None:
        super().__init__(message)


class PayloadTooLargeError(MediaTransformError):
    """Media buffer exceeds the configured size limit."""

    def __init__(self, size_bytes: int, max_bytes: int) -> None:
        super().__init__(
            f"media payload is {size_bytes} bytes; limit is {max_bytes} bytes"
        )
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes


class UnsupportedFormatError(MediaTransformError):
    """Image codec could not parse the buffer."""

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail
