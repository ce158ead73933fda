"""Unit tests for the realtime session controller.

Uses an in-memory transport and a mocked token broker to exercise the
lifecycle state machine, failure reporting and teardown.
"""

import asyncio
import json
import logging
from typing import Any
from unittest.mock import AsyncMock, Mock

import pytest
from pydantic import BaseModel

from realtime_chat.config import RealtimeChatConfig
from realtime_chat.controller import RealtimeSessionController, SessionState
from realtime_chat.errors import HandshakeFailed, PermissionDenied, UpstreamUnavailable
from realtime_chat.token_broker import Credential
from realtime_chat.transcript import EntryStatus, Role
from realtime_chat.transport.base import TransportSession, encode_message


class FakeTransport(TransportSession):
    """In-memory transport recording outbound messages."""

    def __init__(
        self,
        start_error: Exception | None = None,
        stop_error: Exception | None = None,
        session_id: str = "fake-session",
    ) -> None:
        super().__init__(session_id)
        self.start_error = start_error
        self.stop_error = stop_error
        self.sent: list[dict[str, Any]] = []
        self.credential: Credential | None = None
        self.stop_calls = 0
        self._open = False

    @property
    def transport_type(self) -> str:
        return "fake"

    @property
    def is_open(self) -> bool:
        return self._open

    async def start(self, credential: Credential) -> None:
        self.credential = credential
        if self.start_error is not None:
            raise self.start_error
        self._open = True

    def send(self, message: BaseModel | dict[str, Any]) -> bool:
        if not self._open:
            return False
        self.sent.append(json.loads(encode_message(message)))
        return True

    async def stop(self) -> None:
        self.stop_calls += 1
        self._open = False
        if self.stop_error is not None:
            raise self.stop_error


async def settle() -> None:
    """Let scheduled teardown tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def broker() -> Mock:
    """Create a token broker returning a fixed credential."""
    mock = Mock()
    mock.fetch_credential = AsyncMock(return_value=Credential(value="ek_test"))
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def transport() -> FakeTransport:
    """Create a transport that starts successfully."""
    return FakeTransport()


@pytest.fixture
def controller(broker: Mock, transport: FakeTransport) -> RealtimeSessionController:
    """Create a controller wired to the fake broker and transport."""
    return RealtimeSessionController(
        RealtimeChatConfig(),
        token_broker=broker,
        transport_factory=lambda config: transport,
        conversation_id="conv-1",
    )


class TestStartSession:
    """Test session startup."""

    @pytest.mark.asyncio
    async def test_start_success(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test a successful start configures the session and goes active."""
        assert await controller.start_session() is True

        assert controller.state == SessionState.ACTIVE
        assert controller.is_active
        assert controller.status == "Voice session active."
        assert controller.session_id == "fake-session"
        assert transport.credential is not None
        assert transport.sent[0]["type"] == "session.update"

    @pytest.mark.asyncio
    async def test_session_update_carries_manifest(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test declared tools are announced in the session configuration."""

        async def lookup(args: dict[str, Any]) -> str:
            return "context"

        controller.register_function("getAdditionalContext", lookup, description="Lookup")
        await controller.start_session()

        tools = transport.sent[0]["session"]["tools"]
        assert [tool["name"] for tool in tools] == ["getAdditionalContext"]

    @pytest.mark.asyncio
    async def test_start_when_active_returns_true(
        self, controller: RealtimeSessionController, broker: Mock
    ) -> None:
        """Test a second start while active does not reconnect."""
        await controller.start_session()
        assert await controller.start_session() is True
        assert broker.fetch_credential.await_count == 1

    @pytest.mark.asyncio
    async def test_upstream_unavailable(
        self, controller: RealtimeSessionController, broker: Mock, transport: FakeTransport
    ) -> None:
        """Test token endpoint failure returns to idle with its message."""
        broker.fetch_credential.side_effect = UpstreamUnavailable(
            "Failed to fetch session credential: 500"
        )

        assert await controller.start_session() is False

        assert controller.state == SessionState.IDLE
        assert controller.status == "Failed to fetch session credential: 500"
        assert transport.credential is None

    @pytest.mark.asyncio
    async def test_permission_denied(self, broker: Mock) -> None:
        """Test microphone refusal is reported as a user-actionable status."""
        transport = FakeTransport(start_error=PermissionDenied("denied"))
        controller = RealtimeSessionController(
            RealtimeChatConfig(), token_broker=broker, transport_factory=lambda c: transport
        )

        assert await controller.start_session() is False

        assert controller.state == SessionState.IDLE
        assert controller.status == "Microphone permission denied. Please enable access."
        assert transport.stop_calls == 1

    @pytest.mark.asyncio
    async def test_handshake_failed(self, broker: Mock) -> None:
        """Test a rejected offer returns to idle with the failure text."""
        transport = FakeTransport(
            start_error=HandshakeFailed("Failed to establish realtime session: 403")
        )
        controller = RealtimeSessionController(
            RealtimeChatConfig(), token_broker=broker, transport_factory=lambda c: transport
        )

        assert await controller.start_session() is False

        assert controller.state == SessionState.IDLE
        assert controller.status == "Failed to establish realtime session: 403"
        assert controller.session_id is None

    @pytest.mark.asyncio
    async def test_unexpected_error_reraised(self, broker: Mock) -> None:
        """Test unexpected startup errors propagate after cleanup."""
        transport = FakeTransport(start_error=RuntimeError("bug"))
        controller = RealtimeSessionController(
            RealtimeChatConfig(), token_broker=broker, transport_factory=lambda c: transport
        )

        with pytest.raises(RuntimeError, match="bug"):
            await controller.start_session()

        assert controller.state == SessionState.IDLE
        assert controller.status == "Failed to start voice session."

    @pytest.mark.asyncio
    async def test_stop_during_credential_fetch(
        self, controller: RealtimeSessionController, broker: Mock, transport: FakeTransport
    ) -> None:
        """Test a stop racing startup aborts it without going active."""

        async def fetch_then_stop() -> Credential:
            await controller.stop_session()
            return Credential(value="ek_test")

        broker.fetch_credential.side_effect = fetch_then_stop

        assert await controller.start_session() is False

        assert controller.state == SessionState.IDLE
        assert controller.status == "Voice session stopped."
        assert transport.credential is None

    @pytest.mark.asyncio
    async def test_stale_start_does_not_overtake_restart(self, broker: Mock) -> None:
        """Test a start resumed after stop and restart releases only its own transport."""
        transports: list[FakeTransport] = []
        gates = [asyncio.Event(), asyncio.Event()]
        fetches = 0

        def factory(config: RealtimeChatConfig) -> FakeTransport:
            transport = FakeTransport(session_id=f"fake-{len(transports) + 1}")
            transports.append(transport)
            return transport

        async def gated_fetch() -> Credential:
            nonlocal fetches
            gate = gates[fetches]
            fetches += 1
            await gate.wait()
            return Credential(value="ek_test")

        broker.fetch_credential.side_effect = gated_fetch
        controller = RealtimeSessionController(
            RealtimeChatConfig(), token_broker=broker, transport_factory=factory
        )

        first = asyncio.create_task(controller.start_session())
        await settle()
        await controller.stop_session()
        second = asyncio.create_task(controller.start_session())
        await settle()

        gates[0].set()
        assert await first is False
        stale, fresh = transports
        assert stale.credential is None
        assert stale.sent == []
        assert controller.state == SessionState.STARTING

        gates[1].set()
        assert await second is True
        assert controller.state == SessionState.ACTIVE
        assert controller.session_id == "fake-2"
        assert fresh.is_open
        assert not stale.is_open

        await controller.stop_session()
        assert not fresh.is_open

    @pytest.mark.asyncio
    async def test_permission_denied_with_failing_release(self, broker: Mock) -> None:
        """Test a failed start still returns to idle when releasing the transport raises."""
        transport = FakeTransport(
            start_error=PermissionDenied("denied"), stop_error=RuntimeError("release failed")
        )
        controller = RealtimeSessionController(
            RealtimeChatConfig(), token_broker=broker, transport_factory=lambda c: transport
        )

        assert await controller.start_session() is False

        assert controller.state == SessionState.IDLE
        assert controller.status == "Microphone permission denied. Please enable access."

    @pytest.mark.asyncio
    async def test_metrics_reset_per_session(
        self, controller: RealtimeSessionController
    ) -> None:
        """Test each session gets fresh metrics."""
        await controller.start_session()
        first = controller.metrics
        await controller.stop_session()
        await controller.start_session()

        assert controller.metrics is not first


class TestStopSession:
    """Test teardown."""

    @pytest.mark.asyncio
    async def test_stop_releases_transport(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test stop releases the transport and returns to idle."""
        await controller.start_session()
        await controller.stop_session()

        assert controller.state == SessionState.IDLE
        assert controller.status == "Voice session stopped."
        assert transport.stop_calls == 1
        assert controller.session_id is None

    @pytest.mark.asyncio
    async def test_double_stop_is_noop(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test a second stop does nothing."""
        await controller.start_session()
        await controller.stop_session()
        await controller.stop_session()

        assert transport.stop_calls == 1
        assert controller.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(
        self, controller: RealtimeSessionController
    ) -> None:
        """Test stopping an idle controller changes nothing."""
        await controller.stop_session()

        assert controller.state == SessionState.IDLE
        assert controller.status == ""

    @pytest.mark.asyncio
    async def test_stop_drops_waiting_placeholder(
        self, controller: RealtimeSessionController
    ) -> None:
        """Test teardown removes an assistant bubble that never got text."""
        await controller.start_session()
        controller.send_text_message("hello")

        await controller.stop_session()

        entries = controller.transcript.entries
        assert [entry.role for entry in entries] == [Role.USER]
        assert controller.transcript.open_assistant_entry_id is None

    @pytest.mark.asyncio
    async def test_unexpected_close_tears_down(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test channel closure while active stops the session."""
        await controller.start_session()

        transport._emit_close()
        await settle()

        assert controller.state == SessionState.IDLE
        assert controller.status == "Voice session ended unexpectedly."
        assert transport.stop_calls == 1

    @pytest.mark.asyncio
    async def test_transport_failure_tears_down(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test a transport failure stops the session."""
        await controller.start_session()

        transport._emit_failure(ConnectionError("ice failed"))
        await settle()

        assert controller.state == SessionState.IDLE
        assert controller.status == "Voice session connection failed."

    @pytest.mark.asyncio
    async def test_stop_reaches_idle_when_release_fails(self, broker: Mock) -> None:
        """Test a raising transport stop still ends idle and allows a restart."""
        transport = FakeTransport(stop_error=RuntimeError("release failed"))
        controller = RealtimeSessionController(
            RealtimeChatConfig(), token_broker=broker, transport_factory=lambda c: transport
        )
        await controller.start_session()

        await controller.stop_session()

        assert controller.state == SessionState.IDLE
        assert controller.status == "Voice session stopped."
        assert controller.transcript.open_assistant_entry_id is None
        assert await controller.start_session() is True

    @pytest.mark.asyncio
    async def test_stop_log_keeps_session_id(
        self, controller: RealtimeSessionController, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test the stop summary is logged with the session that ended."""
        caplog.set_level(logging.INFO, logger="realtime_chat.controller")
        await controller.start_session()

        await controller.stop_session()

        records = [r for r in caplog.records if r.getMessage() == "Realtime session stopped"]
        assert len(records) == 1
        assert records[0].session_id == "fake-session"  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_teardown_task_tracked(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test the scheduled teardown is held until it finishes."""
        await controller.start_session()

        transport._emit_close()
        assert len(controller._background_tasks) == 1

        await settle()
        assert controller._background_tasks == set()
        assert controller.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_toggle(self, controller: RealtimeSessionController) -> None:
        """Test toggle alternates between active and idle."""
        assert await controller.toggle() is True
        assert controller.is_active
        assert await controller.toggle() is False
        assert controller.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_close_closes_broker(
        self, controller: RealtimeSessionController, broker: Mock
    ) -> None:
        """Test close stops the session and closes the broker client."""
        await controller.start_session()
        await controller.close()

        assert controller.state == SessionState.IDLE
        broker.close.assert_awaited_once()

    def test_invalid_transition_rejected(
        self, controller: RealtimeSessionController
    ) -> None:
        """Test that the state machine rejects invalid moves."""
        with pytest.raises(ValueError, match="Invalid state transition"):
            controller.transition_state(SessionState.ACTIVE)


class TestActiveSession:
    """Test behaviour while a session is active."""

    @pytest.mark.asyncio
    async def test_inbound_messages_reach_transcript(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test transport messages are dispatched into the transcript."""
        await controller.start_session()

        transport._emit_message(json.dumps({"type": "response.text.delta", "delta": "Hi"}))

        entry = controller.transcript.entries[-1]
        assert entry.role == Role.ASSISTANT
        assert entry.content == "Hi"

    @pytest.mark.asyncio
    async def test_send_text_message(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test typed input is recorded and sent with a response request."""
        await controller.start_session()
        transport.sent.clear()

        assert controller.send_text_message("What are your hours?") is True

        assert [m["type"] for m in transport.sent] == [
            "conversation.item.create",
            "response.create",
        ]
        content = transport.sent[0]["item"]["content"][0]
        assert content == {"type": "input_text", "text": "What are your hours?"}

        user, assistant = controller.transcript.entries
        assert user.is_final
        assert assistant.status == EntryStatus.WAITING

    @pytest.mark.asyncio
    async def test_send_text_message_rejected_when_idle(
        self, controller: RealtimeSessionController
    ) -> None:
        """Test typed input is refused without an open channel."""
        assert controller.send_text_message("hello") is False
        assert len(controller.transcript) == 0

    @pytest.mark.asyncio
    async def test_send_blank_text_rejected(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test blank input is refused."""
        await controller.start_session()
        transport.sent.clear()

        assert controller.send_text_message("   ") is False
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_register_declared_tool_while_active(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test declaring a tool mid-session re-sends the configuration."""
        await controller.start_session()
        transport.sent.clear()

        async def handler(args: dict[str, Any]) -> None:
            return None

        controller.register_function("local", handler)
        assert transport.sent == []

        controller.register_function("declared", handler, description="Declared")
        assert [m["type"] for m in transport.sent] == ["session.update"]

    @pytest.mark.asyncio
    async def test_tool_call_round_trip(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test a tool call is answered over the live transport."""

        async def handler(args: dict[str, Any]) -> dict[str, Any]:
            return {"success": True, "message": args["query"]}

        controller.register_function("getAdditionalContext", handler)
        await controller.start_session()
        transport.sent.clear()

        transport._emit_message(
            json.dumps(
                {
                    "type": "response.function_call_arguments.done",
                    "name": "getAdditionalContext",
                    "call_id": "call_1",
                    "arguments": json.dumps({"query": "hours"}),
                }
            )
        )
        await controller.wait_for_tools()

        assert [m["type"] for m in transport.sent] == [
            "conversation.item.create",
            "response.create",
        ]
        assert controller.metrics.tool_calls == 1

    @pytest.mark.asyncio
    async def test_metrics_summary(
        self, controller: RealtimeSessionController, transport: FakeTransport
    ) -> None:
        """Test the summary reflects inbound traffic."""
        await controller.start_session()
        transport._emit_message("{broken")
        transport._emit_message(json.dumps({"type": "response.text.delta", "delta": "Hi"}))

        summary = controller.get_metrics_summary()

        assert summary["session_id"] == "fake-session"
        assert summary["state"] == "active"
        assert summary["messages_received"] == 2
        assert summary["malformed_dropped"] == 1

    @pytest.mark.asyncio
    async def test_status_listener(self, controller: RealtimeSessionController) -> None:
        """Test status listeners see every status change."""
        statuses: list[str] = []
        controller.on_status(statuses.append)

        await controller.start_session()

        assert statuses[-1] == "Voice session active."
        assert len(statuses) >= 2
