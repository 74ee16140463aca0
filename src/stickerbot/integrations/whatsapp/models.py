"""Normalized WhatsApp session and message models.

Backends translate library payloads into these types; nothing outside the
backend modules sees raw protocol messages.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from ...core.time_utils import now_iso


class Connectivity(str, enum.Enum):
    INITIALIZING = "initializing"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class DisconnectReason(enum.IntEnum):
    """WhatsApp Web disconnect status codes."""

    CONNECTION_LOST = 408
    TIMED_OUT = 408
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    FORBIDDEN = 403
    METHOD_NOT_ALLOWED = 405
    MULTIDEVICE_MISMATCH = 411
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


FINAL_DISCONNECT_REASONS = frozenset({int(DisconnectReason.LOGGED_OUT)})


def describe_reason(code: Optional[int]) -> str:
    if code is None:
        return "unknown"
    try:
        return DisconnectReason(code).name.lower()
    except ValueError:
        return f"code_{code}"


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the session; replaced wholesale on every change."""

    connectivity: Connectivity = Connectivity.INITIALIZING
    scan_code: Optional[str] = None
    disconnect_reason: Optional[int] = None
    is_final: bool = False
    updated_at: str = field(default_factory=now_iso)

    def __post_init__(self) -> None:
        if self.scan_code is not None and self.connectivity is not Connectivity.AWAITING_SCAN:
            raise ValueError("scan_code is only valid while awaiting a scan")
        if self.is_final and self.connectivity is not Connectivity.DISCONNECTED:
            raise ValueError("only a disconnected session can be final")

    @property
    def is_connected(self) -> bool:
        return self.connectivity is Connectivity.CONNECTED


ConnectionState = Literal["connecting", "open", "close"]


@dataclass(frozen=True)
class ConnectivityUpdate:
    """Connection change reported by the backend."""

    state: ConnectionState
    reason_code: Optional[int] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class ImageContent:
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class VideoContent:
    is_loop_playback: bool = False
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class DocumentContent:
    mime_type: Optional[str] = None
    file_name: Optional[str] = None


@dataclass(frozen=True)
class StickerContent:
    is_animated: bool = False


@dataclass(frozen=True)
class TextContent:
    body: str


@dataclass(frozen=True)
class UnrecognizedContent:
    raw_type: Optional[str] = None


ContentKind = Union[
    ImageContent,
    VideoContent,
    DocumentContent,
    StickerContent,
    TextContent,
    UnrecognizedContent,
]


@dataclass(frozen=True)
class InboundEvent:
    """One received message, consumed once by the dispatcher."""

    message_id: str
    sender: str
    is_self_originated: bool
    content: ContentKind
    payload_ref: Any = None
    timestamp: Optional[int] = None


ConversionKind = Literal["sticker", "clip"]


@dataclass(frozen=True)
class ConversionAttempt:
    kind: ConversionKind
    attempt_number: int
    max_attempts: int
    backoff_base_ms: int

    def __post_init__(self) -> None:
        if not 1 <= self.attempt_number <= self.max_attempts:
            raise ValueError(
                f"attempt_number must be within 1..{self.max_attempts}, "
                f"got {self.attempt_number}"
            )

    @property
    def is_last(self) -> bool:
        return self.attempt_number == self.max_attempts
