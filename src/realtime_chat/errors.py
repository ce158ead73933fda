"""Error taxonomy for realtime chat sessions.

Every failure a session can observe maps to one of these exception types.
Startup failures (permission, upstream, handshake) are recoverable: the
controller reports them as status text and returns to idle. Per-message and
per-tool failures never end the session.
"""


class RealtimeChatError(Exception):
    """Base class for all realtime chat errors."""


class PermissionDenied(RealtimeChatError):
    """Local audio capture was refused by the user or platform.

    User-actionable: the session never starts, the user is asked to grant
    microphone access and try again.
    """


class UpstreamUnavailable(RealtimeChatError):
    """Token or signaling endpoint could not be reached or answered badly."""


class HandshakeFailed(RealtimeChatError):
    """Remote endpoint rejected the session offer."""


class MalformedMessage(RealtimeChatError):
    """A single inbound channel message could not be parsed."""


class ToolInvocationFailed(RealtimeChatError):
    """A registered tool handler raised while serving a call."""

    def __init__(self, name: str, call_id: str | None, cause: BaseException) -> None:
        super().__init__(f"Tool '{name}' failed: {cause}")
        self.name = name
        self.call_id = call_id
        self.cause = cause


class TransportClosedUnexpectedly(RealtimeChatError):
    """Message channel closed while the session believed itself active."""
