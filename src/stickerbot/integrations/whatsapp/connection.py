"""Connection state machine for the single WhatsApp session.

Owns the socket, the session snapshot and the reconnect policy. Every
mutation of the snapshot goes through `_transition`, which replaces the whole
frozen snapshot so readers on the control surface never observe a partial
update. Socket rebuilds (scheduled reconnects and explicit restarts) are
serialized by one lock; events from a socket that has since been replaced
are dropped by generation number.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from ...core.logging_utils import log_event
from .backend import (
    LoadedCredentials,
    ScanCodeHook,
    SessionBackend,
    SessionHandle,
    SessionOptions,
)
from .errors import (
    ConnectivityLostError,
    CredentialLoadError,
    MediaDownloadError,
    SendFailureError,
    SessionTerminatedError,
)
from .models import (
    FINAL_DISCONNECT_REASONS,
    Connectivity,
    ConnectivityUpdate,
    DisconnectReason,
    InboundEvent,
    SessionSnapshot,
    describe_reason,
)

DEFAULT_RECONNECT_DELAY_SECONDS = 10.0

ALLOWED_TRANSITIONS: dict[Connectivity, frozenset[Connectivity]] = {
    Connectivity.INITIALIZING: frozenset(
        {
            Connectivity.INITIALIZING,
            Connectivity.AWAITING_SCAN,
            Connectivity.CONNECTED,
            Connectivity.DISCONNECTED,
        }
    ),
    Connectivity.AWAITING_SCAN: frozenset(
        {
            Connectivity.INITIALIZING,
            Connectivity.AWAITING_SCAN,
            Connectivity.CONNECTED,
            Connectivity.DISCONNECTED,
        }
    ),
    Connectivity.CONNECTED: frozenset(
        {Connectivity.INITIALIZING, Connectivity.DISCONNECTED}
    ),
    Connectivity.DISCONNECTED: frozenset(
        {Connectivity.INITIALIZING, Connectivity.AWAITING_SCAN}
    ),
}


def is_transition_allowed(current: SessionSnapshot, target: Connectivity) -> bool:
    if current.is_final:
        return False
    return target in ALLOWED_TRANSITIONS[current.connectivity]


class _GenerationListener:
    """Forwards backend signals tagged with the socket generation they came from."""

    def __init__(self, machine: "ConnectionStateMachine", generation: int) -> None:
        self._machine = machine
        self._generation = generation

    async def on_scan_code(self, code: str) -> None:
        await self._machine._handle_scan_code(self._generation, code)

    async def on_connectivity(self, update: ConnectivityUpdate) -> None:
        await self._machine._handle_connectivity(self._generation, update)

    async def on_credentials_rotated(self, state: Any) -> None:
        await self._machine._handle_credentials_rotated(self._generation, state)

    async def on_inbound_batch(self, events: Sequence[InboundEvent]) -> None:
        await self._machine._handle_inbound_batch(self._generation, events)


class ConnectionStateMachine:
    """Single-writer owner of the WhatsApp session."""

    def __init__(
        self,
        backend: SessionBackend,
        *,
        auth_path: Path,
        options: SessionOptions,
        inbound: "asyncio.Queue[InboundEvent]",
        logger: Optional[logging.Logger] = None,
        reconnect_delay_seconds: float = DEFAULT_RECONNECT_DELAY_SECONDS,
        on_scan_code: Optional[ScanCodeHook] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._auth_path = Path(auth_path)
        self._options = options
        self._inbound = inbound
        self._logger = logger or logging.getLogger(__name__)
        self._reconnect_delay = max(float(reconnect_delay_seconds), 0.0)
        self._on_scan_code = on_scan_code
        self._sleep = sleep
        self._snapshot = SessionSnapshot()
        self._handle: Optional[SessionHandle] = None
        self._credentials: Optional[LoadedCredentials] = None
        self._generation = 0
        self._rebuild_lock = asyncio.Lock()
        self._rebuild_task: Optional[asyncio.Task[None]] = None
        self._closed = False

    # -- read side --------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    def current_connectivity(self) -> Connectivity:
        return self._snapshot.connectivity

    def current_scan_code(self) -> Optional[str]:
        return self._snapshot.scan_code

    def is_connected(self) -> bool:
        return self._snapshot.is_connected

    def get_scan_code(self) -> Optional[str]:
        return self._snapshot.scan_code

    @property
    def rebuild_pending(self) -> bool:
        return self._rebuild_task is not None and not self._rebuild_task.done()

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Load credentials and open the socket.

        Raises:
            CredentialLoadError: credentials are unreadable (fatal at startup).
            ConnectivityLostError: the socket could not be opened; a rebuild
                has been scheduled.
            SessionTerminatedError: the session was logged out.
        """

        async with self._rebuild_lock:
            await self._start_locked()

    async def restart(self) -> None:
        """Tear down the current socket and open a new one."""

        async with self._rebuild_lock:
            if self._snapshot.is_final:
                raise SessionTerminatedError(
                    "Session is logged out; restart the process after re-linking",
                    user_message="The bot was logged out of WhatsApp.",
                )
            log_event(
                self._logger,
                logging.INFO,
                "whatsapp.connection.restart",
                connectivity=self._snapshot.connectivity.value,
            )
            self._cancel_rebuild()
            await self._teardown_handle()
            self._transition(SessionSnapshot(connectivity=Connectivity.INITIALIZING))
            await self._start_locked()

    async def close(self) -> None:
        """Close the socket at process shutdown without waiting for rebuilds."""

        self._closed = True
        self._cancel_rebuild()
        await self._teardown_handle()
        log_event(self._logger, logging.INFO, "whatsapp.connection.closed")

    async def _start_locked(self) -> None:
        if self._snapshot.is_final:
            raise SessionTerminatedError("Session is logged out")
        self._rebuild_task = None
        self._generation += 1
        generation = self._generation
        self._transition(SessionSnapshot(connectivity=Connectivity.INITIALIZING))
        log_event(
            self._logger,
            logging.INFO,
            "whatsapp.connection.starting",
            generation=generation,
            auth_path=str(self._auth_path),
        )

        try:
            credentials = await self._backend.load_credentials(self._auth_path)
        except CredentialLoadError as exc:
            self._transition(SessionSnapshot(connectivity=Connectivity.DISCONNECTED))
            log_event(
                self._logger,
                logging.ERROR,
                "whatsapp.connection.credentials_failed",
                auth_path=str(self._auth_path),
                exc=exc,
            )
            raise
        except Exception as exc:
            self._transition(SessionSnapshot(connectivity=Connectivity.DISCONNECTED))
            log_event(
                self._logger,
                logging.ERROR,
                "whatsapp.connection.credentials_failed",
                auth_path=str(self._auth_path),
                exc=exc,
            )
            raise CredentialLoadError(
                f"Failed to load credentials from {self._auth_path}: {exc}"
            ) from exc
        self._credentials = credentials

        listener = _GenerationListener(self, generation)
        try:
            handle = await self._backend.open_session(
                self._options, credentials, listener
            )
        except Exception as exc:
            if generation == self._generation:
                self._transition(
                    SessionSnapshot(connectivity=Connectivity.DISCONNECTED)
                )
                self._schedule_rebuild()
            log_event(
                self._logger,
                logging.WARNING,
                "whatsapp.connection.open_failed",
                generation=generation,
                rebuild_scheduled=self.rebuild_pending,
                exc=exc,
            )
            raise ConnectivityLostError(
                f"Failed to open WhatsApp session: {exc}"
            ) from exc

        if self._closed or generation != self._generation:
            with contextlib.suppress(Exception):
                await handle.close()
            return
        self._handle = handle
        log_event(
            self._logger,
            logging.INFO,
            "whatsapp.connection.opened",
            generation=generation,
        )

    # -- backend signals --------------------------------------------------

    def _is_current(self, generation: int, signal: str) -> bool:
        if generation == self._generation and not self._closed:
            return True
        log_event(
            self._logger,
            logging.DEBUG,
            "whatsapp.connection.stale_signal",
            signal=signal,
            generation=generation,
            current_generation=self._generation,
        )
        return False

    async def _handle_scan_code(self, generation: int, code: str) -> None:
        if not self._is_current(generation, "scan_code"):
            return
        accepted = self._transition(
            SessionSnapshot(connectivity=Connectivity.AWAITING_SCAN, scan_code=code)
        )
        if not accepted:
            return
        if self._on_scan_code is None:
            log_event(
                self._logger,
                logging.INFO,
                "whatsapp.connection.scan_code",
                code=code,
                hint="Open WhatsApp > Settings > Linked Devices > Link a Device and scan this code",
            )
            return
        try:
            result = self._on_scan_code(code)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "whatsapp.connection.scan_code_hook_failed",
                exc=exc,
            )

    async def _handle_connectivity(
        self, generation: int, update: ConnectivityUpdate
    ) -> None:
        if not self._is_current(generation, f"connectivity:{update.state}"):
            return
        if update.state == "connecting":
            log_event(self._logger, logging.INFO, "whatsapp.connection.connecting")
            return
        if update.state == "open":
            if self._transition(SessionSnapshot(connectivity=Connectivity.CONNECTED)):
                log_event(self._logger, logging.INFO, "whatsapp.connection.ready")
            return
        await self._handle_closed(update)

    async def _handle_closed(self, update: ConnectivityUpdate) -> None:
        reason = update.reason_code
        is_final = reason in FINAL_DISCONNECT_REASONS
        lost = ConnectivityLostError(
            update.error_message or "connection closed",
            reason=reason,
            is_final=is_final,
        )
        handle = self._handle
        self._handle = None
        self._generation += 1
        if handle is not None:
            with contextlib.suppress(Exception):
                await handle.close()

        self._transition(
            SessionSnapshot(
                connectivity=Connectivity.DISCONNECTED,
                disconnect_reason=reason,
                is_final=is_final,
            )
        )
        log_event(
            self._logger,
            logging.WARNING,
            "whatsapp.connection.lost",
            reason=describe_reason(reason),
            code=reason,
            is_final=is_final,
            exc=lost,
        )
        if reason == DisconnectReason.METHOD_NOT_ALLOWED:
            log_event(
                self._logger,
                logging.WARNING,
                "whatsapp.connection.network_hint",
                code=reason,
                hint="405 usually means a network or firewall block; try another network or a VPN",
            )
        if is_final:
            log_event(
                self._logger,
                logging.ERROR,
                "whatsapp.connection.logged_out",
                hint="Credentials were revoked; remove the auth folder and re-link",
            )
            return
        self._schedule_rebuild()

    async def _handle_credentials_rotated(self, generation: int, state: Any) -> None:
        if not self._is_current(generation, "credentials"):
            return
        credentials = self._credentials
        if credentials is None:
            return
        try:
            await credentials.persist(state)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "whatsapp.connection.credentials_persist_failed",
                auth_path=str(self._auth_path),
                exc=exc,
            )
            return
        log_event(self._logger, logging.DEBUG, "whatsapp.connection.credentials_saved")

    async def _handle_inbound_batch(
        self, generation: int, events: Sequence[InboundEvent]
    ) -> None:
        if not self._is_current(generation, "inbound"):
            return
        for event in events:
            self._inbound.put_nowait(event)
        log_event(
            self._logger,
            logging.DEBUG,
            "whatsapp.connection.inbound",
            count=len(events),
            pending=self._inbound.qsize(),
        )

    # -- rebuild ----------------------------------------------------------

    def _schedule_rebuild(self) -> None:
        if self._closed or self._snapshot.is_final or self.rebuild_pending:
            return
        log_event(
            self._logger,
            logging.INFO,
            "whatsapp.connection.rebuild_scheduled",
            delay_seconds=self._reconnect_delay,
        )
        self._rebuild_task = asyncio.create_task(self._rebuild_after_delay())

    async def _rebuild_after_delay(self) -> None:
        await self._sleep(self._reconnect_delay)
        async with self._rebuild_lock:
            if self._closed or self._snapshot.is_final:
                return
            if self._snapshot.connectivity is not Connectivity.DISCONNECTED:
                # A restart already rebuilt the socket.
                self._rebuild_task = None
                return
            try:
                await self._start_locked()
            except ConnectivityLostError:
                return
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "whatsapp.connection.rebuild_failed",
                    exc=exc,
                )
                self._schedule_rebuild()

    def _cancel_rebuild(self) -> None:
        task = self._rebuild_task
        self._rebuild_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _teardown_handle(self) -> None:
        handle = self._handle
        self._handle = None
        self._generation += 1
        if handle is None:
            return
        try:
            await handle.close()
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "whatsapp.connection.close_failed",
                exc=exc,
            )

    def _transition(self, target: SessionSnapshot) -> bool:
        current = self._snapshot
        if not is_transition_allowed(current, target.connectivity):
            log_event(
                self._logger,
                logging.DEBUG
                if current.connectivity is target.connectivity
                else logging.WARNING,
                "whatsapp.connection.transition_rejected",
                current=current.connectivity.value,
                target=target.connectivity.value,
                is_final=current.is_final,
            )
            return False
        self._snapshot = target
        if current.connectivity is not target.connectivity:
            log_event(
                self._logger,
                logging.INFO,
                "whatsapp.connection.state",
                previous=current.connectivity.value,
                current=target.connectivity.value,
            )
        return True

    # -- outbound ---------------------------------------------------------

    def _require_handle(self) -> SessionHandle:
        handle = self._handle
        if handle is None:
            raise SendFailureError(
                "No open WhatsApp session",
                user_message="The bot is reconnecting. Please try again shortly.",
            )
        return handle

    async def send_text(self, recipient: str, text: str) -> None:
        handle = self._require_handle()
        try:
            await handle.send_text(recipient, text)
        except SendFailureError:
            raise
        except Exception as exc:
            raise SendFailureError(f"send_text failed: {exc}") from exc

    async def send_sticker(self, recipient: str, data: bytes) -> None:
        handle = self._require_handle()
        try:
            await handle.send_sticker(recipient, data)
        except SendFailureError:
            raise
        except Exception as exc:
            raise SendFailureError(f"send_sticker failed: {exc}") from exc

    async def send_video(
        self, recipient: str, data: bytes, *, loop_playback: bool
    ) -> None:
        handle = self._require_handle()
        try:
            await handle.send_video(recipient, data, loop_playback=loop_playback)
        except SendFailureError:
            raise
        except Exception as exc:
            raise SendFailureError(f"send_video failed: {exc}") from exc

    async def resolve_media(self, event: InboundEvent) -> bytes:
        handle = self._handle
        if handle is None:
            raise MediaDownloadError("No open WhatsApp session")
        try:
            data = await handle.download_media(event.payload_ref)
        except MediaDownloadError:
            raise
        except Exception as exc:
            raise MediaDownloadError(str(exc) or type(exc).__name__) from exc
        if not data:
            raise MediaDownloadError("Could not download media")
        return bytes(data)
