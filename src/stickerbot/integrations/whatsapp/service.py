from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from ...core.config import BotConfig
from ...core.logging_utils import log_event, silence_logger
from ...core.time_utils import monotonic_uptime
from ...media import StickerOptions
from .backend import ScanCodeHook, SessionBackend, SessionOptions
from .connection import ConnectionStateMachine
from .dispatcher import MessageDispatcher
from .errors import ConnectivityLostError
from .models import Connectivity, InboundEvent, SessionSnapshot
from .responder import TextCommandResponder

LIBRARY_LOGGER_NAME = "pyaileys"


def _default_backend(logger: logging.Logger) -> SessionBackend:
    from .pyaileys_backend import PyaileysBackend

    return PyaileysBackend(logger=logger)


class StickerBotService:
    """Owns the session, the inbound queue and its single consumer task."""

    def __init__(
        self,
        config: BotConfig,
        *,
        backend: Optional[SessionBackend] = None,
        logger: Optional[logging.Logger] = None,
        on_scan_code: Optional[ScanCodeHook] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("stickerbot.service")
        library_logger = silence_logger(LIBRARY_LOGGER_NAME)
        self._backend = backend or _default_backend(
            logging.getLogger("stickerbot.whatsapp.backend")
        )
        self._queue: asyncio.Queue[InboundEvent] = asyncio.Queue()
        self._responder = TextCommandResponder(config.media)
        self._connection = ConnectionStateMachine(
            self._backend,
            auth_path=config.whatsapp.auth_path,
            options=SessionOptions(
                logger=library_logger,
                sync_full_history=config.whatsapp.sync_full_history,
                mark_online_on_connect=config.whatsapp.mark_online_on_connect,
                connect_timeout_seconds=config.whatsapp.connect_timeout_seconds,
            ),
            inbound=self._queue,
            logger=logging.getLogger("stickerbot.whatsapp.connection"),
            reconnect_delay_seconds=config.whatsapp.reconnect_delay_seconds,
            on_scan_code=on_scan_code,
            sleep=sleep,
        )
        self._dispatcher = MessageDispatcher(
            self._connection,
            responder=self._responder,
            sticker_options=StickerOptions.from_media_config(config.media),
            retry=config.retry,
            logger=logging.getLogger("stickerbot.whatsapp.dispatch"),
            sleep=sleep,
        )
        self._consumer: Optional[asyncio.Task[None]] = None
        self._started_at = time.monotonic()

    @property
    def config(self) -> BotConfig:
        return self._config

    @property
    def connection(self) -> ConnectionStateMachine:
        return self._connection

    @property
    def dispatcher(self) -> MessageDispatcher:
        return self._dispatcher

    @property
    def queue(self) -> "asyncio.Queue[InboundEvent]":
        return self._queue

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._connection.snapshot

    @property
    def connectivity(self) -> Connectivity:
        return self._connection.current_connectivity()

    def is_connected(self) -> bool:
        return self._connection.is_connected()

    def get_scan_code(self) -> Optional[str]:
        return self._connection.get_scan_code()

    def uptime_seconds(self) -> float:
        return monotonic_uptime(self._started_at)

    async def start(self) -> None:
        """Start the consumer and open the session.

        `CredentialLoadError` propagates; it is fatal for the process.
        """

        self._started_at = time.monotonic()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._dispatcher.run(self._queue))
        log_event(
            self._logger,
            logging.INFO,
            "stickerbot.service.starting",
            auth_path=str(self._config.whatsapp.auth_path),
        )
        try:
            await self._connection.start()
        except ConnectivityLostError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "stickerbot.service.initial_connect_failed",
                exc=exc,
            )
        except Exception:
            await self.stop()
            raise

    async def restart(self) -> None:
        await self._connection.restart()

    async def stop(self) -> None:
        consumer = self._consumer
        self._consumer = None
        if consumer is not None and not consumer.done():
            consumer.cancel()
        await self._connection.close()
        log_event(self._logger, logging.INFO, "stickerbot.service.stopped")
