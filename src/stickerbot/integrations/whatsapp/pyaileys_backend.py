"""`SessionBackend` implementation on top of the `pyaileys` WhatsApp Web client.

Install with the `whatsapp` extra. The library is imported on first use so
the rest of the package (and its tests) work without it.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from ...core.logging_utils import log_event
from .backend import LoadedCredentials, SessionListener, SessionOptions
from .errors import CredentialLoadError, MediaDownloadError
from .models import (
    ConnectivityUpdate,
    ContentKind,
    DocumentContent,
    ImageContent,
    InboundEvent,
    StickerContent,
    TextContent,
    UnrecognizedContent,
    VideoContent,
)

CONNECTION_EVENT = "connection.update"
CREDENTIALS_EVENT = "creds.update"
MESSAGE_EVENT = "message.decrypted"
DECRYPT_ERROR_EVENT = "message.decrypt_error"

LIBRARY_LOGGER_NAME = "pyaileys"

_CONNECTION_STATES = {"connecting", "open", "close"}

ClientFactory = Callable[[Any, SessionOptions], Any]


def _require_pyaileys() -> None:
    try:
        import pyaileys  # noqa: F401
    except ImportError as exc:
        raise CredentialLoadError(
            "pyaileys is not installed; install whatsapp-sticker-bot[whatsapp]"
        ) from exc


def socket_config_kwargs(
    options: SessionOptions, known_fields: Optional[set[str]] = None
) -> dict[str, Any]:
    """Socket settings derived from `options`, limited to fields the config declares."""

    values: dict[str, Any] = {"connect_timeout_s": options.connect_timeout_seconds}
    values.update(options.extra)
    if known_fields is None:
        return values
    return {key: value for key, value in values.items() if key in known_fields}


def build_client(auth_state: Any, options: SessionOptions) -> Any:
    """Build a `WhatsAppClient` the way `WhatsAppClient.from_auth_folder` does."""

    from pyaileys.auth.state import AuthenticationState
    from pyaileys.client import ClientConfig, WhatsAppClient
    from pyaileys.socket_config import SocketConfig

    known = (
        {item.name for item in dataclasses.fields(SocketConfig)}
        if dataclasses.is_dataclass(SocketConfig)
        else set()
    )
    socket = SocketConfig(**socket_config_kwargs(options, known))
    auth = AuthenticationState(creds=auth_state.creds, keys=auth_state.keys)
    return WhatsAppClient(auth=auth, config=ClientConfig(socket=socket))


def _has_field(message: Any, name: str) -> bool:
    has_field = getattr(message, "HasField", None)
    if has_field is None:
        return False
    try:
        return bool(has_field(name))
    except ValueError:
        return False


def classify_message(message: Any, text: Optional[str] = None) -> ContentKind:
    """Map a decrypted protobuf `Message` onto a content variant."""

    if _has_field(message, "imageMessage"):
        return ImageContent(mime_type=message.imageMessage.mimetype or None)
    if _has_field(message, "videoMessage"):
        video = message.videoMessage
        return VideoContent(
            is_loop_playback=bool(getattr(video, "gifPlayback", False)),
            mime_type=video.mimetype or None,
        )
    if _has_field(message, "documentMessage"):
        document = message.documentMessage
        return DocumentContent(
            mime_type=document.mimetype or None,
            file_name=document.fileName or None,
        )
    if _has_field(message, "stickerMessage"):
        return StickerContent(
            is_animated=bool(getattr(message.stickerMessage, "isAnimated", False))
        )
    if text is not None:
        return TextContent(body=text)
    if _has_field(message, "conversation"):
        return TextContent(body=message.conversation)
    if _has_field(message, "extendedTextMessage"):
        return TextContent(body=message.extendedTextMessage.text)
    fields = getattr(message, "ListFields", None)
    raw_type = fields()[0][0].name if callable(fields) and fields() else None
    return UnrecognizedContent(raw_type=raw_type)


def parse_connection_update(payload: Any) -> tuple[Optional[str], Optional[ConnectivityUpdate]]:
    """Split a `connection.update` payload into (scan code, connectivity update)."""

    if not isinstance(payload, Mapping):
        return None, None
    code = payload.get("qr")
    state = payload.get("connection")
    update: Optional[ConnectivityUpdate] = None
    if state in _CONNECTION_STATES:
        reason = payload.get("status_code")
        error = payload.get("last_disconnect") or payload.get("lastDisconnect")
        if isinstance(error, Mapping):
            reason = reason if reason is not None else error.get("status_code")
            error = error.get("error")
        update = ConnectivityUpdate(
            state=state,
            reason_code=int(reason) if reason is not None else None,
            error_message=str(error) if error else None,
        )
    return (str(code) if code else None), update


class PyaileysSessionHandle:
    def __init__(self, client: Any, logger: logging.Logger) -> None:
        self._client = client
        self._logger = logger

    async def send_text(self, recipient: str, text: str) -> None:
        await self._client.send_text(recipient, text)

    async def send_sticker(self, recipient: str, data: bytes) -> None:
        await self._client.send_sticker(recipient, data, mimetype="image/webp")

    async def send_video(
        self, recipient: str, data: bytes, *, loop_playback: bool
    ) -> None:
        await self._client.send_video(recipient, data, gif_playback=loop_playback)

    async def download_media(self, payload_ref: Any) -> bytes:
        try:
            return await self._client.download_message_media(payload_ref)
        except Exception as exc:
            raise MediaDownloadError(str(exc) or type(exc).__name__) from exc

    async def close(self) -> None:
        await self._client.disconnect()


class PyaileysBackend:
    """Opens one `WhatsAppClient` per session and adapts its events.

    `load_credentials` reads the multi-file auth folder only; the client is
    built in `open_session` so the socket settings from `SessionOptions`
    apply to every socket, including rebuilt ones.
    """

    def __init__(
        self,
        *,
        logger: Optional[logging.Logger] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._client_factory = client_factory

    async def load_credentials(self, path: Path) -> LoadedCredentials:
        _require_pyaileys()
        path = Path(path)
        try:
            from pyaileys.auth.store import MultiFileAuthState

            path.mkdir(parents=True, exist_ok=True)
            auth_state = await MultiFileAuthState.load(str(path))
        except Exception as exc:
            raise CredentialLoadError(
                f"Failed to load WhatsApp credentials from {path}: {exc}"
            ) from exc

        async def _persist(_state: Any) -> None:
            await auth_state.save_creds()

        return LoadedCredentials(state=auth_state, persist=_persist)

    async def open_session(
        self,
        options: SessionOptions,
        credentials: LoadedCredentials,
        listener: SessionListener,
    ) -> PyaileysSessionHandle:
        factory = self._client_factory or build_client
        client = factory(credentials.state, options)

        async def _on_connection(payload: Any) -> None:
            code, update = parse_connection_update(payload)
            if code:
                await listener.on_scan_code(code)
            if update is not None:
                if update.state == "open":
                    await self._apply_open_options(client, options)
                await listener.on_connectivity(update)

        async def _on_creds(state: Any) -> None:
            await listener.on_credentials_rotated(state)

        async def _on_message(payload: Any) -> None:
            event = self._normalize_message(client, payload)
            if event is not None:
                await listener.on_inbound_batch([event])

        async def _on_decrypt_error(payload: Any) -> None:
            log_event(
                self._logger,
                logging.WARNING,
                "whatsapp.backend.decrypt_error",
                detail=payload,
            )

        client.on(CONNECTION_EVENT, _on_connection)
        client.on(CREDENTIALS_EVENT, _on_creds)
        client.on(MESSAGE_EVENT, _on_message)
        client.on(DECRYPT_ERROR_EVENT, _on_decrypt_error)
        await client.connect()
        return PyaileysSessionHandle(client, self._logger)

    async def _apply_open_options(self, client: Any, options: SessionOptions) -> None:
        try:
            await client.set_presence(options.mark_online_on_connect)
            if options.sync_full_history:
                await client.request_full_history_sync()
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "whatsapp.backend.open_options_failed",
                mark_online=options.mark_online_on_connect,
                sync_full_history=options.sync_full_history,
                exc=exc,
            )

    def _normalize_message(self, client: Any, payload: Any) -> Optional[InboundEvent]:
        if not isinstance(payload, Mapping):
            return None
        message = payload.get("message")
        chat_jid = payload.get("chat_jid") or payload.get("sender_jid")
        if message is None or not chat_jid:
            return None
        return InboundEvent(
            message_id=str(payload.get("id") or ""),
            sender=str(chat_jid),
            is_self_originated=self._is_self(client, payload.get("sender_jid")),
            content=classify_message(message, payload.get("text")),
            payload_ref=message,
            timestamp=payload.get("timestamp_s"),
        )

    @staticmethod
    def _is_self(client: Any, sender_jid: Optional[str]) -> bool:
        if not sender_jid:
            return False
        creds = getattr(getattr(client, "socket", None), "auth", None)
        me = getattr(getattr(creds, "creds", None), "me", None)
        if me is None:
            return False
        from pyaileys.wabinary.jid import jid_normalized_user

        sender = jid_normalized_user(sender_jid)
        own = {jid_normalized_user(jid) for jid in (me.id, me.lid) if jid}
        return sender in own
