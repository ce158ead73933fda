"""Realtime chat session manager.

This package connects to a realtime conversational endpoint over WebRTC or
WebSocket, reconciles its streaming events into a transcript, and serves
the tool calls it makes.
"""

__version__ = "0.1.0"
