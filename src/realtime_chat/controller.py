"""Realtime session lifecycle controller.

Coordinates credential fetch, transport handshake, event dispatch and
teardown for a single realtime session at a time.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from enum import Enum
from typing import Any

from realtime_chat.config import RealtimeChatConfig
from realtime_chat.dispatcher import EventDispatcher
from realtime_chat.errors import (
    HandshakeFailed,
    PermissionDenied,
    RealtimeChatError,
    TransportClosedUnexpectedly,
    UpstreamUnavailable,
)
from realtime_chat.metrics import SessionMetrics
from realtime_chat.protocol import ResponseCreateMessage, build_session_update, user_text_message
from realtime_chat.token_broker import TokenBrokerClient
from realtime_chat.tools import ToolHandler, ToolRegistry
from realtime_chat.transcript import Transcript
from realtime_chat.transport import TransportSession, create_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[RealtimeChatConfig], TransportSession]
StatusListener = Callable[[str], None]


class SessionState(Enum):
    """Controller state machine states.

    State Transitions:
    - IDLE → STARTING (on start_session)
    - STARTING → ACTIVE (channel open, session configured)
    - STARTING → IDLE (permission, upstream or handshake failure)
    - STARTING → STOPPING (stop requested during startup)
    - ACTIVE → STOPPING (stop requested or fatal transport error)
    - STOPPING → IDLE (resources released)
    """

    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


# Valid state transitions
VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.STARTING},
    SessionState.STARTING: {SessionState.ACTIVE, SessionState.IDLE, SessionState.STOPPING},
    SessionState.ACTIVE: {SessionState.STOPPING},
    SessionState.STOPPING: {SessionState.IDLE},
}


class RealtimeSessionController:
    """Owns the realtime session and all of its mutable state.

    One live session per controller. The transcript and tool registry outlive
    individual sessions; the transport and metrics are per session.
    """

    def __init__(
        self,
        config: RealtimeChatConfig,
        token_broker: TokenBrokerClient | None = None,
        transport_factory: TransportFactory = create_transport,
        conversation_id: str | None = None,
    ) -> None:
        """Initialize session controller.

        Args:
            config: Realtime chat configuration
            token_broker: Credential client (built from config if omitted)
            transport_factory: Builds a fresh transport for each session
            conversation_id: Identifier forwarded to collaborators
        """
        self.config = config
        self.token_broker = token_broker or TokenBrokerClient(config.token_broker)
        self.conversation_id = conversation_id or str(uuid.uuid4())
        self._transport_factory = transport_factory

        self.state = SessionState.IDLE
        self.status = ""
        self.transcript = Transcript()
        self.registry = ToolRegistry()
        self.metrics = SessionMetrics()

        self._transport: TransportSession | None = None
        self._dispatcher: EventDispatcher | None = None
        self._status_listeners: list[StatusListener] = []
        self._background_tasks: set[asyncio.Task[None]] = set()

    @property
    def is_active(self) -> bool:
        """Check if a session is active."""
        return self.state == SessionState.ACTIVE

    @property
    def session_id(self) -> str | None:
        """Transport session id of the live session, if any."""
        return self._transport.session_id if self._transport is not None else None

    def on_status(self, listener: StatusListener) -> None:
        """Subscribe to status text changes."""
        self._status_listeners.append(listener)

    def _set_status(self, status: str) -> None:
        self.status = status
        for listener in list(self._status_listeners):
            listener(status)

    def transition_state(self, new_state: SessionState) -> None:
        """Transition controller to a new state with validation.

        Args:
            new_state: Target state

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state

        logger.info(
            "Session state transition",
            extra={
                "session_id": self.session_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    # -- tools ------------------------------------------------------------

    def register_function(
        self,
        name: str,
        handler: ToolHandler,
        description: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> None:
        """Register (or replace) a capability the endpoint may invoke.

        Declared tools registered while a session is active are announced by
        re-sending the session configuration.
        """
        tool = self.registry.register(name, handler, description, parameters)
        if tool.declared and self.is_active:
            self._configure_session()

    def _configure_session(self) -> bool:
        if self._transport is None:
            return False
        message = build_session_update(self.config.realtime, self.registry.manifest())
        return self._transport.send(message)

    # -- lifecycle --------------------------------------------------------

    async def start_session(self) -> bool:
        """Start a realtime session.

        Every startup step re-checks that this start still owns the
        controller; a start overtaken by a stop (or a stop and a newer start)
        releases its own transport and returns False.

        Returns:
            True if the session is active, False if startup failed or was
            aborted (the reason is in ``status``)
        """
        if self.state == SessionState.ACTIVE:
            return True
        if self.state != SessionState.IDLE:
            logger.warning(
                "Session start ignored", extra={"state": self.state.value}
            )
            return False

        self.transition_state(SessionState.STARTING)
        self.metrics = SessionMetrics()
        transport = self._transport_factory(self.config)
        self._transport = transport

        try:
            self._set_status("Requesting session credential…")
            credential = await self.token_broker.fetch_credential()
            if not self._owns_start(transport):
                await self._release_stale(transport)
                return False

            self._set_status("Connecting…")
            self._attach(transport)
            await transport.start(credential)
            if not self._owns_start(transport):
                await self._release_stale(transport)
                return False

            self._configure_session()
            self.transition_state(SessionState.ACTIVE)
            self._set_status("Voice session active.")
            logger.info(
                "Realtime session started",
                extra={"session_id": transport.session_id, "transport": transport.transport_type},
            )
            return True

        except PermissionDenied as e:
            await self._abort_start(
                transport, "Microphone permission denied. Please enable access.", e
            )
            return False
        except (UpstreamUnavailable, HandshakeFailed) as e:
            await self._abort_start(transport, str(e), e)
            return False
        except Exception as e:
            if not self._owns_start(transport):
                # Stop raced the startup step and tore the transport down under it.
                logger.info(
                    "Session start aborted by stop",
                    extra={"session_id": transport.session_id, "error": str(e)},
                )
                await self._release_stale(transport)
                return False
            await self._abort_start(transport, "Failed to start voice session.", e)
            raise

    def _owns_start(self, transport: TransportSession) -> bool:
        return self.state == SessionState.STARTING and self._transport is transport

    async def _release_stale(self, transport: TransportSession) -> None:
        transport.clear_handlers()
        await self._stop_transport(transport)

    async def _stop_transport(self, transport: TransportSession) -> None:
        try:
            await transport.stop()
        except Exception as e:
            logger.error(
                "Error releasing transport",
                extra={"session_id": transport.session_id, "error": str(e)},
            )

    async def _abort_start(
        self, transport: TransportSession, status: str, error: BaseException
    ) -> None:
        logger.error(
            "Failed to start realtime session",
            extra={"session_id": transport.session_id, "error": str(error)},
        )
        owned = self._owns_start(transport)
        transport.clear_handlers()
        await self._stop_transport(transport)
        if self._transport is transport:
            self._transport = None
            self._dispatcher = None
        if owned and self.state == SessionState.STARTING:
            self.transition_state(SessionState.IDLE)
            self._set_status(status)

    def _attach(self, transport: TransportSession) -> None:
        dispatcher = EventDispatcher(
            self.transcript,
            self.registry,
            transport.send,
            speak_capability=self.config.speak_capability,
            metrics=self.metrics,
            on_status=self._set_status,
        )
        self._dispatcher = dispatcher
        transport.on_message(dispatcher.handle_message)
        transport.on_close(self._on_transport_closed)
        transport.on_transport_failure(self._on_transport_failure)

    def _on_transport_closed(self) -> None:
        if self.state != SessionState.ACTIVE:
            return
        error = TransportClosedUnexpectedly("Realtime channel closed unexpectedly")
        logger.warning(str(error), extra={"session_id": self.session_id})
        self._schedule_teardown("Voice session ended unexpectedly.")

    def _on_transport_failure(self, error: Exception) -> None:
        if self.state not in (SessionState.ACTIVE, SessionState.STARTING):
            return
        logger.warning(
            "Realtime transport failed",
            extra={"session_id": self.session_id, "error": str(error)},
        )
        self._schedule_teardown("Voice session connection failed.")

    def _schedule_teardown(self, status: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self.stop_session(status=status), name="session-teardown"
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def stop_session(self, status: str = "Voice session stopped.") -> None:
        """Stop the session and release every resource.

        Safe from any state; a concurrent or repeated call is a no-op. Always
        ends in IDLE, even when releasing the transport fails.
        """
        if self.state in (SessionState.IDLE, SessionState.STOPPING):
            return

        self.transition_state(SessionState.STOPPING)
        session_id = self.session_id
        transport, self._transport = self._transport, None
        self._dispatcher = None

        try:
            if transport is not None:
                transport.clear_handlers()
                await self._stop_transport(transport)
        finally:
            self.transcript.release_open_entries()
            self.metrics.finalize()
            logger.info(
                "Realtime session stopped",
                extra={**self.get_metrics_summary(), "session_id": session_id},
            )

            self.transition_state(SessionState.IDLE)
            self._set_status(status)

    async def toggle(self) -> bool:
        """Start when idle, stop otherwise.

        Returns:
            Whether a session is active afterwards
        """
        if self.state == SessionState.IDLE:
            return await self.start_session()
        await self.stop_session()
        return False

    async def close(self) -> None:
        """Stop any session and close owned HTTP clients."""
        await self.stop_session()
        await self.token_broker.close()

    # -- outbound ---------------------------------------------------------

    def send_text_message(self, text: str) -> bool:
        """Send typed user input and request a response.

        Returns:
            False if the text is blank or the channel is not open
        """
        if not text.strip():
            return False

        transport = self._transport
        if transport is None or not transport.is_open:
            logger.error("Realtime channel is not ready")
            return False

        self.transcript.add_user_text(text)
        self.transcript.open_assistant_waiting()
        self.metrics.record_response_requested()

        if not transport.send(user_text_message(text)):
            return False
        transport.send(ResponseCreateMessage())
        return True

    async def wait_for_tools(self) -> None:
        """Wait for in-flight tool and speak tasks of the live session."""
        if self._dispatcher is not None:
            await self._dispatcher.drain()

    def get_metrics_summary(self) -> dict[str, str | float | int | None]:
        """Get session metrics summary.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            **self.metrics.summary(),
        }
