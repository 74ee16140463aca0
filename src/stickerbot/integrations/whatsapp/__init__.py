"""WhatsApp session, dispatch and reply handling."""

from .backend import (
    LoadedCredentials,
    SessionBackend,
    SessionHandle,
    SessionListener,
    SessionOptions,
)
from .connection import ConnectionStateMachine
from .dispatcher import DispatchOutcome, MessageDispatcher
from .errors import (
    ConnectivityLostError,
    CredentialLoadError,
    MediaDownloadError,
    SendFailureError,
    SessionTerminatedError,
    WhatsAppError,
)
from .models import (
    Connectivity,
    ConnectivityUpdate,
    DisconnectReason,
    InboundEvent,
    SessionSnapshot,
)
from .responder import TextCommandResponder
from .service import StickerBotService

__all__ = [
    "ConnectionStateMachine",
    "Connectivity",
    "ConnectivityLostError",
    "ConnectivityUpdate",
    "CredentialLoadError",
    "DisconnectReason",
    "DispatchOutcome",
    "InboundEvent",
    "LoadedCredentials",
    "MediaDownloadError",
    "MessageDispatcher",
    "SendFailureError",
    "SessionBackend",
    "SessionHandle",
    "SessionListener",
    "SessionOptions",
    "SessionSnapshot",
    "SessionTerminatedError",
    "StickerBotService",
    "TextCommandResponder",
    "WhatsAppError",
]
