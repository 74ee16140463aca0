"""Contract between the session core and a WhatsApp Web client library.

Protocol-only: concrete backends (`pyaileys_backend`, `testing`) implement
the behavior.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, runtime_checkable

from .models import ConnectivityUpdate, InboundEvent

PersistCredentials = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class LoadedCredentials:
    """Opaque credential state plus the callable that saves a rotated copy."""

    state: Any
    persist: PersistCredentials


@dataclass(frozen=True)
class SessionOptions:
    """Options passed to the library when a socket is opened."""

    logger: logging.Logger
    sync_full_history: bool = False
    mark_online_on_connect: bool = False
    connect_timeout_seconds: float = 60.0
    extra: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class SessionListener(Protocol):
    """Upstream signals delivered by a backend, in arrival order."""

    async def on_scan_code(self, code: str) -> None:
        """A new pairing code is available."""

    async def on_connectivity(self, update: ConnectivityUpdate) -> None:
        """The socket opened, is connecting, or closed."""

    async def on_credentials_rotated(self, state: Any) -> None:
        """Credential material changed and must be persisted."""

    async def on_inbound_batch(self, events: Sequence[InboundEvent]) -> None:
        """Normalized inbound messages."""


@runtime_checkable
class SessionHandle(Protocol):
    """One open socket."""

    async def send_text(self, recipient: str, text: str) -> None:
        """Send a plain text message."""

    async def send_sticker(self, recipient: str, data: bytes) -> None:
        """Send WebP bytes as a sticker message."""

    async def send_video(
        self, recipient: str, data: bytes, *, loop_playback: bool
    ) -> None:
        """Send video bytes, optionally flagged for looping playback."""

    async def download_media(self, payload_ref: Any) -> bytes:
        """Resolve an inbound payload reference to decrypted bytes."""

    async def close(self) -> None:
        """Close the socket; pending calls should fail fast."""


@runtime_checkable
class SessionBackend(Protocol):
    """Factory for credentials and sockets."""

    async def load_credentials(self, path: Path) -> LoadedCredentials:
        """Load credential material from `path`."""

    async def open_session(
        self,
        options: SessionOptions,
        credentials: LoadedCredentials,
        listener: SessionListener,
    ) -> SessionHandle:
        """Open a socket that reports to `listener`."""


ScanCodeHook = Callable[[str], Optional[Awaitable[None]]]
