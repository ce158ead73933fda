"""WebSocket transport implementation.

Connects to the realtime endpoint's WebSocket interface. JSON events travel
as text frames; when capture is enabled, microphone audio is streamed as
input_audio_buffer.append events instead of a media track.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import Any

import websockets
from aiortc.contrib.media import MediaPlayer
from pydantic import BaseModel
from websockets.asyncio.client import ClientConnection
from websockets.protocol import State

from realtime_chat.config import AudioConfig, RealtimeModelConfig, TransportConfig
from realtime_chat.errors import HandshakeFailed, UpstreamUnavailable
from realtime_chat.media import encode_pcm_chunk, open_microphone, pcm16_chunks, stop_player
from realtime_chat.protocol import InputAudioAppendMessage
from realtime_chat.token_broker import Credential
from realtime_chat.transport.base import TransportSession, encode_message

logger = logging.getLogger(__name__)


class WebSocketTransport(TransportSession):
    """WebSocket-based transport session.

    Outbound messages are queued by send() and written by a sender task, so
    send() stays synchronous like the data channel's.
    """

    def __init__(
        self,
        realtime_config: RealtimeModelConfig,
        transport_config: TransportConfig,
        audio_config: AudioConfig,
        microphone_factory: Callable[[AudioConfig], MediaPlayer] = open_microphone,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            realtime_config: Remote endpoint configuration
            transport_config: Transport configuration (max message size)
            audio_config: Local capture configuration
            microphone_factory: Opens the local capture device
        """
        super().__init__(f"ws-{uuid.uuid4().hex[:12]}")
        self._realtime_config = realtime_config
        self._transport_config = transport_config
        self._audio_config = audio_config
        self._microphone_factory = microphone_factory

        self._websocket: ClientConnection | None = None
        self._microphone: MediaPlayer | None = None
        self._send_queue: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        self._active = False

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "websocket"

    @property
    def is_open(self) -> bool:
        """Check if the WebSocket connection is open."""
        return self._websocket is not None and self._websocket.state == State.OPEN

    def endpoint_url(self) -> str:
        """WebSocket endpoint including the model query parameter."""
        return f"{self._realtime_config.websocket_url}?model={self._realtime_config.model}"

    async def start(self, credential: Credential) -> None:
        """Acquire the microphone, connect, and start the I/O tasks.

        Args:
            credential: Short-lived credential from the token broker

        Raises:
            PermissionDenied: If local audio capture is refused
            UpstreamUnavailable: If the endpoint cannot be reached
            HandshakeFailed: If the endpoint rejects the connection
        """
        if self._websocket is not None:
            raise RuntimeError("WebSocket transport is already started")

        if self._audio_config.capture:
            self._microphone = self._microphone_factory(self._audio_config)

        try:
            self._websocket = await websockets.connect(
                self.endpoint_url(),
                additional_headers={
                    "Authorization": credential.bearer(),
                    "OpenAI-Beta": "realtime=v1",
                },
                max_size=self._transport_config.max_message_size,
            )
        except websockets.exceptions.InvalidStatus as e:
            raise HandshakeFailed(
                f"Failed to establish realtime session: {e.response.status_code}"
            ) from e
        except (OSError, websockets.exceptions.InvalidHandshake) as e:
            raise UpstreamUnavailable(f"Realtime endpoint unreachable: {e}") from e

        self._active = True
        self._tasks = [
            asyncio.create_task(self._receive_loop()),
            asyncio.create_task(self._send_loop()),
        ]
        if self._microphone is not None and self._microphone.audio is not None:
            self._tasks.append(asyncio.create_task(self._audio_loop()))

        logger.info(
            "WebSocket session established",
            extra={"session_id": self.session_id, "model": self._realtime_config.model},
        )

    async def _receive_loop(self) -> None:
        """Feed inbound text frames to subscribers in arrival order."""
        websocket = self._websocket
        if websocket is None:
            return
        try:
            async for raw_message in websocket:
                if isinstance(raw_message, bytes):
                    raw_message = raw_message.decode("utf-8", errors="replace")
                self._emit_message(raw_message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(
                "WebSocket connection closed",
                extra={"session_id": self.session_id, "reason": str(e)},
            )

        if self._active:
            self._active = False
            logger.warning(
                "WebSocket closed unexpectedly", extra={"session_id": self.session_id}
            )
            self._emit_close()

    async def _send_loop(self) -> None:
        """Drain the outbound queue onto the socket."""
        while True:
            payload = await self._send_queue.get()
            websocket = self._websocket
            if websocket is None:
                return
            try:
                await websocket.send(payload)
            except websockets.exceptions.ConnectionClosed:
                return

    async def _audio_loop(self) -> None:
        """Stream microphone audio as input_audio_buffer.append events."""
        microphone = self._microphone
        if microphone is None or microphone.audio is None:
            return
        async for chunk in pcm16_chunks(microphone.audio, self._audio_config.sample_rate):
            if not self.send(InputAudioAppendMessage(audio=encode_pcm_chunk(chunk))):
                return

    def send(self, message: BaseModel | dict[str, Any]) -> bool:
        """Queue one message for the sender task.

        Returns:
            False if the connection is not open
        """
        if not self._active or not self.is_open:
            logger.warning(
                "WebSocket is not open, dropping message",
                extra={"session_id": self.session_id},
            )
            return False

        self._send_queue.put_nowait(encode_message(message))
        return True

    async def stop(self) -> None:
        """Cancel I/O tasks, release the microphone and close the socket.

        Idempotent and safe after a partially failed start.
        """
        self._active = False

        tasks, self._tasks = self._tasks, []
        microphone, self._microphone = self._microphone, None
        websocket, self._websocket = self._websocket, None

        if not tasks and microphone is None and websocket is None:
            return

        logger.info("Closing WebSocket session", extra={"session_id": self.session_id})

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if microphone is not None:
            try:
                stop_player(microphone)
            except Exception as e:
                logger.warning(
                    "Error releasing microphone",
                    extra={"session_id": self.session_id, "error": str(e)},
                )

        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.warning(
                    "Error during session close",
                    extra={"session_id": self.session_id, "error": str(e)},
                )

        while not self._send_queue.empty():
            try:
                self._send_queue.get_nowait()
            except asyncio.QueueEmpty:
                break
