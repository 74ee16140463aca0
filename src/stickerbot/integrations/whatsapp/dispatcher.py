"""Sequential consumer for inbound WhatsApp events.

Each event is classified once and produces at most one reply. Errors raised
while handling an event are turned into an apology here and never reach the
queue consumer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Literal, Optional, Protocol

from typing_extensions import assert_never

from ...core.config import RetryConfig
from ...core.logging_utils import log_event
from ...core.retry import retry_with_backoff
from ...media import PayloadTooLargeError, StickerOptions, make_clip, make_sticker
from .models import (
    ConversionAttempt,
    ConversionKind,
    DocumentContent,
    ImageContent,
    InboundEvent,
    StickerContent,
    TextContent,
    UnrecognizedContent,
    VideoContent,
)
from .responder import TextCommandResponder

DispatchOutcome = Literal[
    "ignored_self",
    "ignored",
    "sticker",
    "clip",
    "sticker_reply",
    "text",
    "failed",
]

DECRYPT_ERROR_PATTERNS = (
    "decrypt",
    "cipher",
    "bad mac",
    "mac check",
    "hmac",
    "unsupported state or unable to authenticate data",
)


class OutboundSession(Protocol):
    async def send_text(self, recipient: str, text: str) -> None: ...

    async def send_sticker(self, recipient: str, data: bytes) -> None: ...

    async def send_video(
        self, recipient: str, data: bytes, *, loop_playback: bool
    ) -> None: ...

    async def resolve_media(self, event: InboundEvent) -> bytes: ...


def is_decrypt_error(exc: BaseException) -> bool:
    """True when `exc` (or what caused it) reads like a session-key failure."""

    current: Optional[BaseException] = exc
    seen = 0
    while current is not None and seen < 5:
        message = str(current).lower()
        if any(pattern in message for pattern in DECRYPT_ERROR_PATTERNS):
            return True
        current = current.__cause__
        seen += 1
    return False


def _mime_prefix(mime_type: Optional[str]) -> str:
    return (mime_type or "").strip().lower()


class MessageDispatcher:
    def __init__(
        self,
        session: OutboundSession,
        *,
        responder: TextCommandResponder,
        sticker_options: Optional[StickerOptions] = None,
        retry: Optional[RetryConfig] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session = session
        self._responder = responder
        self._sticker_options = sticker_options or StickerOptions()
        self._retry = retry or RetryConfig(
            clip_max_attempts=3, sticker_max_attempts=1, backoff_base_ms=1000
        )
        self._logger = logger or logging.getLogger(__name__)
        self._sleep = sleep

    async def run(self, queue: "asyncio.Queue[InboundEvent]") -> None:
        """Consume events forever, one at a time."""

        log_event(self._logger, logging.INFO, "whatsapp.dispatch.started")
        while True:
            event = await queue.get()
            try:
                await self.dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "whatsapp.dispatch.unhandled",
                    message_id=event.message_id,
                    exc=exc,
                )
            finally:
                queue.task_done()

    async def dispatch(self, event: InboundEvent) -> DispatchOutcome:
        if event.is_self_originated:
            return "ignored_self"

        content = event.content
        if isinstance(content, ImageContent):
            return await self._sticker_path(event)
        if isinstance(content, VideoContent):
            return await self._clip_path(event)
        if isinstance(content, DocumentContent):
            mime = _mime_prefix(content.mime_type)
            if mime.startswith("image/"):
                return await self._sticker_path(event)
            if mime.startswith("video/"):
                return await self._clip_path(event)
            return "ignored"
        if isinstance(content, StickerContent):
            await self._reply(event, self._responder.sticker_reply(), "sticker_reply")
            return "sticker_reply"
        if isinstance(content, TextContent):
            reply = self._responder.reply_for(content.body)
            await self._reply(event, reply, "text")
            return "text"
        if isinstance(content, UnrecognizedContent):
            log_event(
                self._logger,
                logging.DEBUG,
                "whatsapp.dispatch.ignored",
                message_id=event.message_id,
                raw_type=content.raw_type,
            )
            return "ignored"
        assert_never(content)

    def _attempt(self, kind: ConversionKind, attempt_number: int) -> ConversionAttempt:
        if kind == "sticker":
            max_attempts = self._retry.sticker_max_attempts
        else:
            max_attempts = self._retry.clip_max_attempts
        return ConversionAttempt(
            kind=kind,
            attempt_number=attempt_number,
            max_attempts=max_attempts,
            backoff_base_ms=self._retry.backoff_base_ms,
        )

    async def _sticker_path(self, event: InboundEvent) -> DispatchOutcome:
        started = time.monotonic()

        async def _convert(attempt_number: int) -> DispatchOutcome:
            attempt = self._attempt("sticker", attempt_number)
            log_event(
                self._logger,
                logging.INFO,
                "whatsapp.dispatch.sticker.attempt",
                message_id=event.message_id,
                attempt=attempt.attempt_number,
                max_attempts=attempt.max_attempts,
            )
            data = await self._session.resolve_media(event)
            sticker = make_sticker(data, self._sticker_options)
            await self._session.send_sticker(event.sender, sticker)
            log_event(
                self._logger,
                logging.INFO,
                "whatsapp.dispatch.sticker.sent",
                message_id=event.message_id,
                input_bytes=len(data),
                output_bytes=len(sticker),
                elapsed_ms=round((time.monotonic() - started) * 1000),
            )
            return "sticker"

        async def _exhausted(exc: BaseException) -> DispatchOutcome:
            await self._apologize(event, self._responder.sticker_failed, exc)
            return "failed"

        return await retry_with_backoff(
            _convert,
            max_attempts=self._retry.sticker_max_attempts,
            base_delay_ms=self._retry.backoff_base_ms,
            on_exhausted=_exhausted,
            sleep=self._sleep,
            logger=self._logger,
            label="sticker",
        )

    async def _clip_path(self, event: InboundEvent) -> DispatchOutcome:
        async def _convert(attempt_number: int) -> DispatchOutcome:
            attempt = self._attempt("clip", attempt_number)
            log_event(
                self._logger,
                logging.INFO,
                "whatsapp.dispatch.clip.attempt",
                message_id=event.message_id,
                attempt=attempt.attempt_number,
                max_attempts=attempt.max_attempts,
                last=attempt.is_last,
            )
            data = await self._session.resolve_media(event)
            clip = make_clip(data, self._sticker_options.max_bytes)
            await self._session.send_video(event.sender, clip, loop_playback=True)
            log_event(
                self._logger,
                logging.INFO,
                "whatsapp.dispatch.clip.sent",
                message_id=event.message_id,
                bytes=len(clip),
                attempt=attempt.attempt_number,
            )
            return "clip"

        async def _exhausted(exc: BaseException) -> DispatchOutcome:
            if isinstance(exc, PayloadTooLargeError):
                text = self._responder.clip_too_large
            elif is_decrypt_error(exc):
                text = self._responder.clip_decrypt_failed
            else:
                text = self._responder.clip_failed
            await self._apologize(event, text, exc)
            return "failed"

        return await retry_with_backoff(
            _convert,
            max_attempts=self._retry.clip_max_attempts,
            base_delay_ms=self._retry.backoff_base_ms,
            on_exhausted=_exhausted,
            sleep=self._sleep,
            logger=self._logger,
            label="clip",
        )

    async def _reply(self, event: InboundEvent, text: str, kind: str) -> None:
        try:
            await self._session.send_text(event.sender, text)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "whatsapp.dispatch.reply_failed",
                message_id=event.message_id,
                kind=kind,
                exc=exc,
            )

    async def _apologize(
        self, event: InboundEvent, text: str, cause: BaseException
    ) -> None:
        log_event(
            self._logger,
            logging.ERROR,
            "whatsapp.dispatch.conversion_failed",
            message_id=event.message_id,
            sender=event.sender,
            exc=cause,
        )
        try:
            await self._session.send_text(event.sender, text)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "whatsapp.dispatch.apology_failed",
                message_id=event.message_id,
                exc=exc,
            )
