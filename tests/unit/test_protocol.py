"""Unit tests for realtime protocol messages.

Tests outbound message shapes, the inbound event-type mapping and response
text extraction.
"""

import json

import pytest
from pydantic import ValidationError

from realtime_chat.config import RealtimeModelConfig
from realtime_chat.protocol import (
    WIRE_EVENT_TAGS,
    EventTag,
    FunctionCallArgumentsDone,
    ResponseCreateMessage,
    ToolDefinition,
    build_session_update,
    extract_response_text,
    tool_result_message,
    user_text_message,
)


class TestOutboundMessages:
    """Test client → server message construction."""

    def test_session_update(self) -> None:
        """Test session.update carries config values and the tool manifest."""
        config = RealtimeModelConfig(
            voice="verse",
            instructions="Greet with {introduction}",
            introduction="hi",
        )
        tools = [ToolDefinition(name="getAdditionalContext", description="Lookup")]

        data = json.loads(build_session_update(config, tools).model_dump_json())

        assert data["type"] == "session.update"
        session = data["session"]
        assert session["voice"] == "verse"
        assert session["instructions"] == "Greet with hi"
        assert session["modalities"] == ["text"]
        assert session["turn_detection"] == {
            "type": "server_vad",
            "threshold": 0.6,
            "prefix_padding_ms": 300,
            "silence_duration_ms": 500,
        }
        assert session["input_audio_transcription"] == {"model": "whisper-1"}
        assert session["tools"][0]["type"] == "function"
        assert session["tools"][0]["name"] == "getAdditionalContext"

    def test_user_text_message(self) -> None:
        """Test typed text is wrapped as a user message item."""
        data = json.loads(user_text_message("hello").model_dump_json())

        assert data == {
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": "hello"}],
            },
        }

    def test_tool_result_message(self) -> None:
        """Test tool results are wrapped as function_call_output items."""
        data = json.loads(tool_result_message("call_1", '{"ok": true}').model_dump_json())

        assert data["item"] == {
            "type": "function_call_output",
            "call_id": "call_1",
            "output": '{"ok": true}',
        }

    def test_response_create(self) -> None:
        """Test the response request has only a type."""
        assert json.loads(ResponseCreateMessage().model_dump_json()) == {
            "type": "response.create"
        }


class TestInboundEvents:
    """Test inbound event parsing."""

    def test_wire_tags(self) -> None:
        """Test representative wire types map to logical tags."""
        assert WIRE_EVENT_TAGS["input_audio_buffer.committed"] == EventTag.BUFFER_COMMITTED
        assert WIRE_EVENT_TAGS["response.audio_transcript.delta"] == EventTag.OUTPUT_DELTA
        assert (
            WIRE_EVENT_TAGS["response.function_call_arguments.done"]
            == EventTag.TOOL_CALL_ARGUMENTS_DONE
        )
        assert "response.created" not in WIRE_EVENT_TAGS

    def test_function_call_arguments(self) -> None:
        """Test tool call events validate name and call id."""
        call = FunctionCallArgumentsDone.model_validate(
            {
                "type": "response.function_call_arguments.done",
                "name": "tool",
                "call_id": "call_1",
                "arguments": '{"a": 1}',
                "item_id": "item_1",
            }
        )
        assert call.name == "tool"
        assert call.arguments == '{"a": 1}'

        with pytest.raises(ValidationError):
            FunctionCallArgumentsDone.model_validate({"name": "tool", "call_id": ""})


class TestExtractResponseText:
    """Test response.done text extraction."""

    def test_output_text_preferred(self) -> None:
        """Test the output_text part wins over other parts."""
        event = {
            "response": {
                "output": [
                    {"type": "function_call", "name": "tool"},
                    {
                        "type": "message",
                        "content": [
                            {"type": "audio", "transcript": "spoken"},
                            {"type": "output_text", "text": "written"},
                        ],
                    },
                ]
            }
        }
        assert extract_response_text(event) == "written"

    def test_transcript_fallback(self) -> None:
        """Test the audio transcript is used when there is no text part."""
        event = {
            "response": {
                "output": [
                    {"type": "message", "content": [{"type": "audio", "transcript": "spoken"}]}
                ]
            }
        }
        assert extract_response_text(event) == "spoken"

    def test_no_message_item(self) -> None:
        """Test responses with only tool calls carry no text."""
        event = {"response": {"output": [{"type": "function_call", "name": "tool"}]}}
        assert extract_response_text(event) is None

    def test_missing_response(self) -> None:
        """Test events without a response body carry no text."""
        assert extract_response_text({"type": "response.done"}) is None
        assert extract_response_text({"response": {"output": []}}) is None
