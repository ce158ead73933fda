"""Inbound event dispatcher.

Parses each channel message, routes it by type to the transcript or the tool
registry, and sends tool results back with a response-continuation request.

Messages are handled synchronously in arrival order. Tool calls and the speak
capability run as background tasks, so a slow tool never holds up the
messages behind it.
"""

import asyncio
import json
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from pydantic import BaseModel, ValidationError

from realtime_chat.errors import MalformedMessage
from realtime_chat.metrics import SessionMetrics
from realtime_chat.protocol import (
    WIRE_EVENT_TAGS,
    EventTag,
    FunctionCallArgumentsDone,
    ResponseCreateMessage,
    extract_response_text,
    tool_result_message,
)
from realtime_chat.tools import ToolErr, ToolRegistry
from realtime_chat.transcript import Transcript

logger = logging.getLogger(__name__)

Sender = Callable[[BaseModel | dict[str, Any]], bool]
StatusCallback = Callable[[str], None]


def parse_event(raw: str | bytes) -> dict[str, Any]:
    """Decode one channel message.

    Raises:
        MalformedMessage: If the message is not a JSON object with a string type
    """
    try:
        event = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedMessage(f"Invalid JSON: {e}") from e
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise MalformedMessage("Message has no type tag")
    return event


class EventDispatcher:
    """Routes realtime events to the transcript and tool registry."""

    def __init__(
        self,
        transcript: Transcript,
        registry: ToolRegistry,
        send: Sender,
        speak_capability: str = "triggerAvatar",
        metrics: SessionMetrics | None = None,
        on_status: StatusCallback | None = None,
    ) -> None:
        """Initialize event dispatcher.

        Args:
            transcript: Conversation log to reconcile events into
            registry: Capabilities the endpoint may call
            send: Writes one outbound message; returns False if the channel is closed
            speak_capability: Tool invoked with each finalized assistant message
            metrics: Optional metrics sink
            on_status: Optional callback for user-facing status text
        """
        self.transcript = transcript
        self.registry = registry
        self.speak_capability = speak_capability
        self.metrics = metrics or SessionMetrics()
        self._send = send
        self._on_status = on_status
        self._tasks: set[asyncio.Task[None]] = set()
        self._calls_in_flight: set[str] = set()

        self._handlers: dict[EventTag, Callable[[dict[str, Any]], None]] = {
            EventTag.SPEECH_STARTED: self._on_speech_started,
            EventTag.SPEECH_STOPPED: self._on_speech_stopped,
            EventTag.BUFFER_COMMITTED: self._on_buffer_committed,
            EventTag.INPUT_TRANSCRIPTION_PARTIAL: self._on_transcription_partial,
            EventTag.INPUT_TRANSCRIPTION_DELTA: self._on_transcription_delta,
            EventTag.INPUT_TRANSCRIPTION_COMPLETED: self._on_transcription_completed,
            EventTag.OUTPUT_DELTA: self._on_output_delta,
            EventTag.RESPONSE_DONE: self._on_response_done,
            EventTag.TOOL_CALL_ARGUMENTS_DONE: self._on_tool_call,
            EventTag.ERROR: self._on_error,
        }

    @property
    def pending_tasks(self) -> int:
        """Number of tool or speak tasks still running."""
        return len(self._tasks)

    def handle_message(self, raw: str | bytes) -> None:
        """Process one inbound message. Never raises for bad input."""
        self.metrics.record_message()
        try:
            event = parse_event(raw)
        except MalformedMessage as e:
            self.metrics.record_malformed()
            logger.warning("Dropping malformed message", extra={"error": str(e)})
            return

        tag = WIRE_EVENT_TAGS.get(event["type"])
        if tag is None:
            logger.debug("Ignoring event", extra={"type": event["type"]})
            return

        self._handlers[tag](event)

    async def drain(self) -> None:
        """Wait for every background tool and speak task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- user track -------------------------------------------------------

    def _on_speech_started(self, event: dict[str, Any]) -> None:
        self.transcript.start_user_speech()

    def _on_speech_stopped(self, event: dict[str, Any]) -> None:
        self.transcript.stop_user_speech()

    def _on_buffer_committed(self, event: dict[str, Any]) -> None:
        self.transcript.commit_user_speech()
        self.transcript.open_assistant_waiting()
        self.metrics.record_response_requested()

    def _on_transcription_partial(self, event: dict[str, Any]) -> None:
        text = event.get("transcript") or event.get("text") or ""
        self.transcript.update_user_partial(str(text))

    def _on_transcription_delta(self, event: dict[str, Any]) -> None:
        delta = event.get("delta") or ""
        if delta:
            self.transcript.update_user_partial(str(delta), append=True)

    def _on_transcription_completed(self, event: dict[str, Any]) -> None:
        self.transcript.complete_user_transcription(str(event.get("transcript") or ""))

    # -- assistant track --------------------------------------------------

    def _on_output_delta(self, event: dict[str, Any]) -> None:
        delta = event.get("delta") or event.get("text_delta") or ""
        if not delta:
            return
        self.transcript.append_assistant_delta(str(delta))
        self.metrics.record_output_delta()

    def _on_response_done(self, event: dict[str, Any]) -> None:
        text = extract_response_text(event)
        if not text:
            self.transcript.discard_open_assistant()
            return

        self.transcript.finalize_assistant(text)
        if self.speak_capability in self.registry:
            self._spawn(self._speak(text), name="speak")

    async def _speak(self, text: str) -> None:
        result = await self.registry.invoke(self.speak_capability, {"message": text})
        if isinstance(result, ToolErr):
            logger.warning(
                "Speak capability failed",
                extra={"tool": self.speak_capability, "error": result.message},
            )

    # -- tools ------------------------------------------------------------

    def _on_tool_call(self, event: dict[str, Any]) -> None:
        try:
            call = FunctionCallArgumentsDone.model_validate(event)
        except ValidationError as e:
            self.metrics.record_malformed()
            logger.warning("Dropping malformed tool call", extra={"error": str(e)})
            return

        if call.name not in self.registry:
            logger.warning(
                "Tool call for unregistered capability",
                extra={"tool": call.name, "call_id": call.call_id},
            )
            return

        if call.call_id in self._calls_in_flight:
            logger.warning(
                "Duplicate tool call ignored",
                extra={"tool": call.name, "call_id": call.call_id},
            )
            return

        self._calls_in_flight.add(call.call_id)
        self._spawn(self._run_tool_call(call), name=f"tool-{call.call_id}")

    async def _run_tool_call(self, call: FunctionCallArgumentsDone) -> None:
        try:
            result = await self.registry.invoke(call.name, call.arguments, call.call_id)
        finally:
            self._calls_in_flight.discard(call.call_id)

        self.metrics.record_tool_call(failed=isinstance(result, ToolErr))

        if not self._send(tool_result_message(call.call_id, result.to_output())):
            logger.warning(
                "Tool result dropped, channel closed",
                extra={"tool": call.name, "call_id": call.call_id},
            )
            return

        self._send(ResponseCreateMessage())
        logger.info(
            "Tool result sent",
            extra={
                "tool": call.name,
                "call_id": call.call_id,
                "ok": not isinstance(result, ToolErr),
            },
        )

    # -- errors -----------------------------------------------------------

    def _on_error(self, event: dict[str, Any]) -> None:
        error = event.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        message = message or "Unknown realtime error"
        logger.warning("Realtime endpoint reported an error", extra={"error": message})
        if self._on_status is not None:
            self._on_status(f"Realtime error: {message}")

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Background task failed",
                extra={"task": task.get_name(), "error": str(error)},
            )
