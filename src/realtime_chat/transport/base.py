"""Base transport abstraction for the realtime message channel.

Defines the interface that all transport implementations (WebRTC, WebSocket)
must implement so the session controller can drive either one.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from realtime_chat.token_broker import Credential

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], None]
CloseHandler = Callable[[], None]
FailureHandler = Callable[[Exception], None]


def encode_message(message: BaseModel | dict[str, Any]) -> str:
    """Serialize an outbound message to JSON text."""
    if isinstance(message, BaseModel):
        return message.model_dump_json()
    return json.dumps(message)


class TransportSession(ABC):
    """Base class for realtime transport sessions.

    Owns the connection to the remote endpoint and the structured-message
    channel on top of it. Subscribers register hooks for inbound messages,
    channel closure and transport failure; hooks are invoked on the event
    loop, one message at a time, in arrival order.
    """

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._message_handlers: list[MessageHandler] = []
        self._close_handlers: list[CloseHandler] = []
        self._failure_handlers: list[FailureHandler] = []

    @property
    def session_id(self) -> str:
        """Unique session identifier for logging and tracking."""
        return self._session_id

    def on_message(self, handler: MessageHandler) -> None:
        """Subscribe to raw inbound channel messages."""
        self._message_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        """Subscribe to channel closure."""
        self._close_handlers.append(handler)

    def on_transport_failure(self, handler: FailureHandler) -> None:
        """Subscribe to transport-level failures (e.g. ICE failure)."""
        self._failure_handlers.append(handler)

    def clear_handlers(self) -> None:
        """Detach every subscriber; later events are dropped."""
        self._message_handlers.clear()
        self._close_handlers.clear()
        self._failure_handlers.clear()

    def _emit_message(self, raw: str) -> None:
        for handler in list(self._message_handlers):
            handler(raw)

    def _emit_close(self) -> None:
        for handler in list(self._close_handlers):
            handler()

    def _emit_failure(self, error: Exception) -> None:
        for handler in list(self._failure_handlers):
            handler(error)

    @abstractmethod
    async def start(self, credential: Credential) -> None:
        """Acquire media, perform the handshake and open the channel.

        Returns once the channel is open and ready for send().

        Args:
            credential: Short-lived credential from the token broker

        Raises:
            PermissionDenied: If local audio capture is refused
            UpstreamUnavailable: If the signaling endpoint is unreachable
            HandshakeFailed: If the remote endpoint rejects the offer
        """
        pass

    @abstractmethod
    def send(self, message: BaseModel | dict[str, Any]) -> bool:
        """Serialize and transmit one structured message.

        Args:
            message: Protocol model or plain dict

        Returns:
            True if the message was handed to the channel, False if the
            channel is not open (nothing is sent)
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Release media, channel and connection.

        Idempotent and safe to call after a partially failed start.
        """
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if the message channel is open."""
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'webrtc', 'websocket')."""
        pass
