"""Transport layer for the realtime message channel.

Provides abstraction over different transport types (WebRTC, WebSocket)
for reaching the realtime endpoint.
"""

from realtime_chat.config import RealtimeChatConfig
from realtime_chat.transport.base import TransportSession
from realtime_chat.transport.webrtc_transport import WebRTCTransport
from realtime_chat.transport.websocket_transport import WebSocketTransport


def create_transport(config: RealtimeChatConfig) -> TransportSession:
    """Build the transport selected by ``config.transport.type``."""
    if config.transport.type == "websocket":
        return WebSocketTransport(config.realtime, config.transport, config.audio)
    return WebRTCTransport(config.realtime, config.transport, config.audio)


__all__ = [
    "TransportSession",
    "WebRTCTransport",
    "WebSocketTransport",
    "create_transport",
]
