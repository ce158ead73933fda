"""Realtime event protocol definitions.

Defines Pydantic models for the JSON messages exchanged with the realtime
endpoint over the structured-message channel, plus the mapping from inbound
wire event types to the logical tags the dispatcher routes on.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from realtime_chat.config import RealtimeModelConfig


class EventTag(Enum):
    """Logical inbound event tags."""

    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    BUFFER_COMMITTED = "buffer_committed"
    INPUT_TRANSCRIPTION_PARTIAL = "input_transcription_partial"
    INPUT_TRANSCRIPTION_DELTA = "input_transcription_delta"
    INPUT_TRANSCRIPTION_COMPLETED = "input_transcription_completed"
    OUTPUT_DELTA = "output_delta"
    RESPONSE_DONE = "response_done"
    TOOL_CALL_ARGUMENTS_DONE = "tool_call_arguments_done"
    ERROR = "error"


# Inbound wire type → logical tag. Anything not listed is ignored.
WIRE_EVENT_TAGS: dict[str, EventTag] = {
    "input_audio_buffer.speech_started": EventTag.SPEECH_STARTED,
    "input_audio_buffer.speech_stopped": EventTag.SPEECH_STOPPED,
    "input_audio_buffer.committed": EventTag.BUFFER_COMMITTED,
    "conversation.item.input_audio_transcription": EventTag.INPUT_TRANSCRIPTION_PARTIAL,
    "conversation.item.input_audio_transcription.delta": EventTag.INPUT_TRANSCRIPTION_DELTA,
    "conversation.item.input_audio_transcription.completed": (
        EventTag.INPUT_TRANSCRIPTION_COMPLETED
    ),
    "response.audio_transcript.delta": EventTag.OUTPUT_DELTA,
    "response.output_text.delta": EventTag.OUTPUT_DELTA,
    "response.text.delta": EventTag.OUTPUT_DELTA,
    "response.done": EventTag.RESPONSE_DONE,
    "response.function_call_arguments.done": EventTag.TOOL_CALL_ARGUMENTS_DONE,
    "error": EventTag.ERROR,
}


class FunctionCallArgumentsDone(BaseModel):
    """Server → Client: a tool call's arguments are complete."""

    type: Literal["response.function_call_arguments.done"] = (
        "response.function_call_arguments.done"
    )
    name: str = Field(..., min_length=1, description="Capability name")
    call_id: str = Field(..., min_length=1, description="Protocol call identifier")
    arguments: Any = Field(
        default="{}", description="JSON-encoded arguments (or an already-decoded object)"
    )


class TurnDetection(BaseModel):
    """Turn detection settings sent in the session configuration."""

    type: str = "server_vad"
    threshold: float = 0.6
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 500


class InputAudioTranscription(BaseModel):
    """Input transcription settings sent in the session configuration."""

    model: str = "whisper-1"


class ToolDefinition(BaseModel):
    """Capability manifest entry declared to the remote endpoint."""

    type: Literal["function"] = "function"
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class SessionConfiguration(BaseModel):
    """Body of a session.update message."""

    instructions: str
    voice: str = "alloy"
    modalities: list[str] = Field(default_factory=lambda: ["text"])
    tool_choice: str = "auto"
    turn_detection: TurnDetection = Field(default_factory=TurnDetection)
    input_audio_format: str = "pcm16"
    output_audio_format: str = "pcm16"
    input_audio_transcription: InputAudioTranscription = Field(
        default_factory=InputAudioTranscription
    )
    tools: list[ToolDefinition] = Field(default_factory=list)


class SessionUpdateMessage(BaseModel):
    """Client → Server: configure the session."""

    type: Literal["session.update"] = "session.update"
    session: SessionConfiguration


class InputTextContent(BaseModel):
    """Text content part of a user message."""

    type: Literal["input_text"] = "input_text"
    text: str = Field(..., min_length=1)


class UserMessageItem(BaseModel):
    """Conversation item carrying typed user input."""

    type: Literal["message"] = "message"
    role: Literal["user"] = "user"
    content: list[InputTextContent]


class FunctionCallOutputItem(BaseModel):
    """Conversation item carrying a tool result."""

    type: Literal["function_call_output"] = "function_call_output"
    call_id: str = Field(..., min_length=1)
    output: str = Field(..., description="JSON-encoded tool result")


class ConversationItemCreateMessage(BaseModel):
    """Client → Server: append an item to the remote conversation."""

    type: Literal["conversation.item.create"] = "conversation.item.create"
    item: UserMessageItem | FunctionCallOutputItem


class ResponseCreateMessage(BaseModel):
    """Client → Server: ask the endpoint to generate (or resume) a response."""

    type: Literal["response.create"] = "response.create"


class InputAudioAppendMessage(BaseModel):
    """Client → Server: append base64 PCM16 audio to the input buffer."""

    type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
    audio: str = Field(..., description="Base64-encoded PCM16 mono audio")


# Union type for all client → server messages
ClientMessage = (
    SessionUpdateMessage
    | ConversationItemCreateMessage
    | ResponseCreateMessage
    | InputAudioAppendMessage
)


def build_session_update(
    config: RealtimeModelConfig, tools: list[ToolDefinition]
) -> SessionUpdateMessage:
    """Build the session configuration message from config and tool manifest.

    Args:
        config: Realtime endpoint configuration
        tools: Declared capabilities

    Returns:
        session.update message ready to send
    """
    turn = config.turn_detection
    return SessionUpdateMessage(
        session=SessionConfiguration(
            instructions=config.render_instructions(),
            voice=config.voice,
            modalities=list(config.modalities),
            tool_choice=config.tool_choice,
            turn_detection=TurnDetection(
                type=turn.type,
                threshold=turn.threshold,
                prefix_padding_ms=turn.prefix_padding_ms,
                silence_duration_ms=turn.silence_duration_ms,
            ),
            input_audio_format=config.input_audio_format,
            output_audio_format=config.output_audio_format,
            input_audio_transcription=InputAudioTranscription(
                model=config.transcription_model
            ),
            tools=tools,
        )
    )


def user_text_message(text: str) -> ConversationItemCreateMessage:
    """Wrap typed user text in a conversation.item.create message."""
    return ConversationItemCreateMessage(
        item=UserMessageItem(content=[InputTextContent(text=text)])
    )


def tool_result_message(call_id: str, output: str) -> ConversationItemCreateMessage:
    """Wrap a serialized tool result in a conversation.item.create message."""
    return ConversationItemCreateMessage(
        item=FunctionCallOutputItem(call_id=call_id, output=output)
    )


def extract_response_text(event: dict[str, Any]) -> str | None:
    """Extract the assistant text from a response.done event.

    Picks the first ``message`` output item and prefers its ``output_text``
    content part, falling back to the first content part's text or
    transcript.

    Args:
        event: Decoded response.done event

    Returns:
        Response text, or None when the response carried no message text
    """
    response = event.get("response")
    if not isinstance(response, dict):
        return None
    output = response.get("output")
    if not isinstance(output, list):
        return None

    message_item = next(
        (item for item in output if isinstance(item, dict) and item.get("type") == "message"),
        None,
    )
    if message_item is None:
        return None

    content = message_item.get("content")
    if not isinstance(content, list) or not content:
        return None

    parts = [part for part in content if isinstance(part, dict)]
    text_part = next((part for part in parts if part.get("type") == "output_text"), None)
    if text_part is not None and text_part.get("text"):
        return str(text_part["text"])

    if parts:
        first = parts[0]
        text = first.get("text") or first.get("transcript")
        if text:
            return str(text)
    return None
