"""WebRTC transport implementation.

Connects to the realtime endpoint with an aiortc peer connection: local
microphone track out, remote audio track in, and a data channel carrying the
JSON event protocol. Signaling is a single HTTP POST of the SDP offer, with
the short-lived credential as bearer auth, answered by the remote SDP.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import Any

import aiohttp
from aiortc import RTCDataChannel, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from pydantic import BaseModel

from realtime_chat.config import AudioConfig, RealtimeModelConfig, TransportConfig
from realtime_chat.errors import HandshakeFailed, UpstreamUnavailable
from realtime_chat.media import create_remote_sink, open_microphone, stop_player
from realtime_chat.token_broker import Credential
from realtime_chat.transport.base import TransportSession, encode_message

logger = logging.getLogger(__name__)


class WebRTCTransport(TransportSession):
    """WebRTC-based transport session.

    Implements the TransportSession interface over an aiortc peer connection
    and data channel.
    """

    def __init__(
        self,
        realtime_config: RealtimeModelConfig,
        transport_config: TransportConfig,
        audio_config: AudioConfig,
        http_session: aiohttp.ClientSession | None = None,
        microphone_factory: Callable[[AudioConfig], MediaPlayer] = open_microphone,
    ) -> None:
        """Initialize WebRTC transport.

        Args:
            realtime_config: Remote endpoint configuration
            transport_config: Transport configuration (data channel label)
            audio_config: Local capture and remote sink configuration
            http_session: Optional shared aiohttp session for signaling
            microphone_factory: Opens the local capture device
        """
        super().__init__(f"rtc-{uuid.uuid4().hex[:12]}")
        self._realtime_config = realtime_config
        self._transport_config = transport_config
        self._audio_config = audio_config
        self._http_session = http_session
        self._microphone_factory = microphone_factory

        self._pc: RTCPeerConnection | None = None
        self._channel: RTCDataChannel | None = None
        self._microphone: MediaPlayer | None = None
        self._remote_sink: MediaBlackhole | MediaRecorder | None = None
        self._sink_tasks: set[asyncio.Task[None]] = set()

        self._channel_open = asyncio.Event()
        self._failed = asyncio.Event()
        self._active = False

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "webrtc"

    @property
    def is_open(self) -> bool:
        """Check if the data channel is open."""
        return self._channel is not None and self._channel.readyState == "open"

    def signaling_url(self) -> str:
        """Signaling endpoint including model and voice query parameters."""
        return (
            f"{self._realtime_config.url}?model={self._realtime_config.model}"
            f"&voice={self._realtime_config.voice}"
        )

    async def start(self, credential: Credential) -> None:
        """Acquire the microphone, negotiate the connection and open the channel.

        Args:
            credential: Short-lived credential from the token broker

        Raises:
            PermissionDenied: If local audio capture is refused
            UpstreamUnavailable: If the signaling endpoint is unreachable
            HandshakeFailed: If the remote endpoint rejects the offer or the
                connection fails before the channel opens
        """
        if self._pc is not None:
            raise RuntimeError("WebRTC transport is already started")

        if self._audio_config.capture:
            self._microphone = self._microphone_factory(self._audio_config)

        pc = RTCPeerConnection()
        self._pc = pc
        self._remote_sink = create_remote_sink(self._audio_config)

        @pc.on("track")
        def on_track(track: Any) -> None:
            if track.kind == "audio" and self._remote_sink is not None:
                self._remote_sink.addTrack(track)
                task = asyncio.ensure_future(self._remote_sink.start())
                self._sink_tasks.add(task)
                task.add_done_callback(self._sink_tasks.discard)

        @pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            state = pc.connectionState
            logger.debug(
                "Peer connection state changed",
                extra={"session_id": self.session_id, "state": state},
            )
            if state == "failed":
                self._failed.set()
                if self._active:
                    logger.warning(
                        "Peer connection failed", extra={"session_id": self.session_id}
                    )
                    self._emit_failure(ConnectionError("Peer connection failed"))

        channel = pc.createDataChannel(self._transport_config.data_channel_label)
        self._channel = channel
        self._attach_channel(channel)

        if self._microphone is not None and self._microphone.audio is not None:
            pc.addTrack(self._microphone.audio)
        else:
            pc.addTransceiver("audio", direction="recvonly")

        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)

        answer_sdp = await self._exchange_offer(pc.localDescription.sdp, credential)
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))
        except ValueError as e:
            raise HandshakeFailed(f"Remote session description rejected: {e}") from e

        await self._wait_for_channel()
        self._active = True

        logger.info(
            "WebRTC session established",
            extra={"session_id": self.session_id, "model": self._realtime_config.model},
        )

    def _attach_channel(self, channel: RTCDataChannel) -> None:
        @channel.on("open")
        def on_open() -> None:
            logger.info("Data channel open", extra={"session_id": self.session_id})
            self._channel_open.set()

        @channel.on("message")
        def on_message(message: str | bytes) -> None:
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            self._emit_message(message)

        @channel.on("close")
        def on_close() -> None:
            was_active = self._active
            self._active = False
            self._failed.set()
            logger.info(
                "Data channel closed",
                extra={"session_id": self.session_id, "unexpected": was_active},
            )
            if was_active:
                self._emit_close()

    async def _exchange_offer(self, offer_sdp: str, credential: Credential) -> str:
        """POST the local SDP offer and return the remote SDP answer."""
        owns_session = self._http_session is None
        session = self._http_session or aiohttp.ClientSession()
        try:
            async with session.post(
                self.signaling_url(),
                data=offer_sdp,
                headers={
                    "Authorization": credential.bearer(),
                    "Content-Type": "application/sdp",
                },
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.error(
                        "Signaling request rejected",
                        extra={
                            "session_id": self.session_id,
                            "status": response.status,
                            "body": body[:200],
                        },
                    )
                    raise HandshakeFailed(
                        f"Failed to establish realtime session: {response.status}"
                    )
                return await response.text()
        except aiohttp.ClientError as e:
            raise UpstreamUnavailable(f"Signaling endpoint unreachable: {e}") from e
        finally:
            if owns_session:
                await session.close()

    async def _wait_for_channel(self) -> None:
        """Block until the data channel opens or the connection fails."""
        open_task = asyncio.ensure_future(self._channel_open.wait())
        failed_task = asyncio.ensure_future(self._failed.wait())
        try:
            await asyncio.wait({open_task, failed_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            open_task.cancel()
            failed_task.cancel()

        if not self._channel_open.is_set():
            raise HandshakeFailed("Connection failed before the data channel opened")

    def send(self, message: BaseModel | dict[str, Any]) -> bool:
        """Serialize and transmit one message over the data channel.

        Returns:
            False if the channel is not open
        """
        if not self.is_open or self._channel is None:
            logger.warning(
                "Data channel is not open, dropping message",
                extra={"session_id": self.session_id},
            )
            return False

        self._channel.send(encode_message(message))
        return True

    async def stop(self) -> None:
        """Release microphone, channel, connection and remote sink.

        Each resource is detached before it is closed, so repeated or
        concurrent calls only release what is still held.
        """
        self._active = False

        microphone, self._microphone = self._microphone, None
        channel, self._channel = self._channel, None
        pc, self._pc = self._pc, None
        sink, self._remote_sink = self._remote_sink, None

        if microphone is None and channel is None and pc is None and sink is None:
            return

        logger.info("Closing WebRTC session", extra={"session_id": self.session_id})

        if microphone is not None:
            try:
                stop_player(microphone)
            except Exception as e:
                logger.warning(
                    "Error releasing microphone",
                    extra={"session_id": self.session_id, "error": str(e)},
                )

        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.warning(
                    "Error closing data channel",
                    extra={"session_id": self.session_id, "error": str(e)},
                )

        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning(
                    "Error closing peer connection",
                    extra={"session_id": self.session_id, "error": str(e)},
                )

        if sink is not None:
            try:
                await sink.stop()
            except Exception as e:
                logger.warning(
                    "Error stopping remote audio sink",
                    extra={"session_id": self.session_id, "error": str(e)},
                )

        self._channel_open.clear()
