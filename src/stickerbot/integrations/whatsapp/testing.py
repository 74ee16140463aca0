"""In-memory session backend for tests and local dry runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from .backend import LoadedCredentials, SessionListener, SessionOptions
from .models import ConnectivityUpdate, InboundEvent

MediaScript = Union[bytes, BaseException, list]


@dataclass
class SentMessage:
    kind: str
    recipient: str
    text: Optional[str] = None
    data: Optional[bytes] = None
    loop_playback: Optional[bool] = None


@dataclass
class FakeSessionHandle:
    backend: "FakeSessionBackend"
    listener: SessionListener
    closed: bool = False

    def _check_open(self) -> None:
        if self.closed:
            raise ConnectionError("socket closed")

    async def _maybe_fail(self, kind: str) -> None:
        self._check_open()
        failures = self.backend.send_failures.get(kind)
        if failures:
            raise failures.pop(0)

    async def send_text(self, recipient: str, text: str) -> None:
        await self._maybe_fail("text")
        self.backend.sent.append(SentMessage("text", recipient, text=text))

    async def send_sticker(self, recipient: str, data: bytes) -> None:
        await self._maybe_fail("sticker")
        self.backend.sent.append(SentMessage("sticker", recipient, data=data))

    async def send_video(
        self, recipient: str, data: bytes, *, loop_playback: bool
    ) -> None:
        await self._maybe_fail("video")
        self.backend.sent.append(
            SentMessage("video", recipient, data=data, loop_playback=loop_playback)
        )

    async def download_media(self, payload_ref: Any) -> bytes:
        self._check_open()
        self.backend.download_calls.append(payload_ref)
        script = self.backend.media.get(payload_ref)
        if isinstance(script, list):
            if not script:
                raise LookupError(f"no scripted media left for {payload_ref!r}")
            script = script.pop(0) if len(script) > 1 else script[0]
        if script is None:
            raise LookupError(f"unknown media {payload_ref!r}")
        if isinstance(script, BaseException):
            raise script
        return script

    async def close(self) -> None:
        self.closed = True
        self.backend.close_count += 1


@dataclass
class FakeSessionBackend:
    """Records everything the bot sends and lets tests drive session signals.

    `media` maps payload refs to bytes, an exception to raise, or a list of
    either consumed in order (the last entry repeats).
    """

    credentials_state: Any = field(default_factory=dict)
    load_error: Optional[BaseException] = None
    open_errors: list[BaseException] = field(default_factory=list)
    persist_error: Optional[BaseException] = None
    media: dict[Any, MediaScript] = field(default_factory=dict)
    send_failures: dict[str, list[BaseException]] = field(default_factory=dict)
    sent: list[SentMessage] = field(default_factory=list)
    persisted: list[Any] = field(default_factory=list)
    handles: list[FakeSessionHandle] = field(default_factory=list)
    download_calls: list[Any] = field(default_factory=list)
    load_calls: list[Path] = field(default_factory=list)
    close_count: int = 0
    last_options: Optional[SessionOptions] = None

    async def load_credentials(self, path: Path) -> LoadedCredentials:
        self.load_calls.append(Path(path))
        if self.load_error is not None:
            raise self.load_error

        async def _persist(state: Any) -> None:
            if self.persist_error is not None:
                raise self.persist_error
            self.persisted.append(state)

        return LoadedCredentials(state=self.credentials_state, persist=_persist)

    async def open_session(
        self,
        options: SessionOptions,
        credentials: LoadedCredentials,
        listener: SessionListener,
    ) -> FakeSessionHandle:
        self.last_options = options
        if self.open_errors:
            raise self.open_errors.pop(0)
        handle = FakeSessionHandle(backend=self, listener=listener)
        self.handles.append(handle)
        return handle

    @property
    def current(self) -> FakeSessionHandle:
        if not self.handles:
            raise RuntimeError("no session has been opened")
        return self.handles[-1]

    @property
    def open_count(self) -> int:
        return len(self.handles)

    def texts(self) -> list[str]:
        return [msg.text or "" for msg in self.sent if msg.kind == "text"]

    async def emit_scan_code(self, code: str) -> None:
        await self.current.listener.on_scan_code(code)

    async def emit_open(self) -> None:
        await self.current.listener.on_connectivity(ConnectivityUpdate(state="open"))

    async def emit_connecting(self) -> None:
        await self.current.listener.on_connectivity(
            ConnectivityUpdate(state="connecting")
        )

    async def emit_close(
        self, reason_code: Optional[int] = None, message: Optional[str] = None
    ) -> None:
        await self.current.listener.on_connectivity(
            ConnectivityUpdate(state="close", reason_code=reason_code, error_message=message)
        )

    async def emit_credentials(self, state: Any) -> None:
        await self.current.listener.on_credentials_rotated(state)

    async def emit_inbound(self, events: Sequence[InboundEvent]) -> None:
        await self.current.listener.on_inbound_batch(list(events))
