"""Configuration schema for realtime chat sessions.

Defines Pydantic models for loading and validating session configuration
from YAML files and environment variables.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_INSTRUCTIONS = """
# Role
- Open the session with {introduction}
- You answer questions using ONLY the getAdditionalContext function, which is
  your knowledge base and source of truth.
- Never call getAdditionalContext for the opening greeting.
- Support phone number: {phone_number}

# Query handling
- Reply to greetings briefly and without function calls.
- Every other user query MUST go through getAdditionalContext.
- The query argument must start with "A user asked: " followed by the exact
  transcription, then expand the intent with enough detail for an expert.
- If getAdditionalContext apologises, apologise too.

# Answers
- Use only information returned by getAdditionalContext.
- Keep answers under 50 words unless more is needed.
- Never mention the lookup, never repeat the user's question.

# Style
- Natural pauses, varied intonation, occasional filler words.
- Match the caller's pace and tone, speak slightly faster than usual.
""".strip()


class TokenBrokerConfig(BaseModel):
    """Short-lived credential endpoint configuration."""

    url: str = Field(
        default="http://localhost:3000/api/session",
        description="Token-issuing endpoint (POST, returns client secret JSON)",
    )


class TurnDetectionConfig(BaseModel):
    """Server-side voice activity detection thresholds."""

    type: str = Field(default="server_vad", description="Turn detection strategy")
    threshold: float = Field(
        default=0.6, ge=0.0, le=1.0, description="Speech probability threshold"
    )
    prefix_padding_ms: int = Field(
        default=300, ge=0, description="Audio kept before detected speech start"
    )
    silence_duration_ms: int = Field(
        default=500, ge=0, description="Silence required to end a turn"
    )


class RealtimeModelConfig(BaseModel):
    """Remote conversational endpoint configuration."""

    url: str = Field(
        default="https://api.openai.com/v1/realtime",
        description="Signaling endpoint for SDP offer/answer exchange",
    )
    websocket_url: str = Field(
        default="wss://api.openai.com/v1/realtime",
        description="WebSocket endpoint used by the websocket transport",
    )
    model: str = Field(
        default="gpt-4o-realtime-preview-2025-06-03", description="Realtime model name"
    )
    voice: str = Field(default="alloy", description="Output voice")
    modalities: list[Literal["text", "audio"]] = Field(
        default_factory=lambda: ["text"], description="Response modalities"
    )
    instructions: str = Field(
        default=DEFAULT_INSTRUCTIONS, description="System instructions template"
    )
    introduction: str = Field(
        default="a short, friendly greeting",
        description="Substituted for {introduction} in the instructions",
    )
    phone_number: str = Field(
        default="", description="Substituted for {phone_number} in the instructions"
    )
    tool_choice: str = Field(default="auto", description="Tool choice policy")
    turn_detection: TurnDetectionConfig = Field(default_factory=TurnDetectionConfig)
    transcription_model: str = Field(
        default="whisper-1", description="Input audio transcription model"
    )
    input_audio_format: str = Field(default="pcm16", description="Input audio format")
    output_audio_format: str = Field(default="pcm16", description="Output audio format")

    @field_validator("modalities")
    @classmethod
    def validate_modalities(cls, v: list[str]) -> list[str]:
        """Require at least one modality."""
        if not v:
            raise ValueError("realtime modalities must not be empty")
        return v

    def render_instructions(self) -> str:
        """Fill the instruction template placeholders."""
        return self.instructions.replace("{introduction}", self.introduction).replace(
            "{phone_number}", self.phone_number
        )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    type: Literal["webrtc", "websocket"] = Field(
        default="webrtc", description="Transport used to reach the realtime endpoint"
    )
    data_channel_label: str = Field(
        default="oai-events", description="Label of the WebRTC data channel"
    )
    max_message_size: int = Field(
        default=2**20, ge=1024, description="Maximum inbound WebSocket message size"
    )


class AudioConfig(BaseModel):
    """Local audio capture and remote audio sink configuration."""

    capture: bool = Field(default=True, description="Capture the local microphone")
    input_device: str = Field(
        default="default", description="Capture device passed to FFmpeg"
    )
    input_format: str | None = Field(
        default="pulse",
        description="FFmpeg input format (pulse, alsa, avfoundation, dshow)",
    )
    output_file: str | None = Field(
        default=None,
        description="Record remote audio to this file; discarded when unset",
    )
    sample_rate: int = Field(
        default=24000, description="PCM16 sample rate for websocket audio streaming"
    )

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        """Validate that sample rate is accepted by the realtime endpoint."""
        valid_rates = [16000, 24000]
        if v not in valid_rates:
            raise ValueError(f"audio sample_rate must be one of {valid_rates}, got {v}")
        return v


class KnowledgeConfig(BaseModel):
    """Knowledge-context collaborator configuration."""

    enabled: bool = Field(default=True, description="Register getAdditionalContext")
    url: str = Field(
        default="http://localhost:3000/api/customgpt",
        description="Knowledge relay endpoint accepting {prompt, sessionId}",
    )


class AvatarConfig(BaseModel):
    """External avatar speech configuration."""

    enabled: bool = Field(default=False, description="Register the speak capability")
    token_url: str = Field(
        default="http://localhost:3000/api/heygen",
        description="Avatar token relay endpoint (GET, returns {token})",
    )
    api_url: str = Field(
        default="https://api.heygen.com", description="Avatar streaming API base URL"
    )
    session_id: str | None = Field(
        default=None, description="Streaming avatar session to speak through"
    )


class RealtimeChatConfig(BaseModel):
    """Root realtime chat configuration."""

    token_broker: TokenBrokerConfig = Field(default_factory=TokenBrokerConfig)
    realtime: RealtimeModelConfig = Field(default_factory=RealtimeModelConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    knowledge: KnowledgeConfig = Field(default_factory=KnowledgeConfig)
    avatar: AvatarConfig = Field(default_factory=AvatarConfig)

    speak_capability: str = Field(
        default="triggerAvatar",
        description="Tool name invoked with each finalized assistant message",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "RealtimeChatConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import os

        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if broker_url := os.getenv("TOKEN_BROKER_URL"):
            data.setdefault("token_broker", {})["url"] = broker_url

        if model := os.getenv("REALTIME_MODEL"):
            data.setdefault("realtime", {})["model"] = model

        if transport_type := os.getenv("REALTIME_TRANSPORT"):
            data.setdefault("transport", {})["type"] = transport_type

        if knowledge_url := os.getenv("KNOWLEDGE_URL"):
            data.setdefault("knowledge", {})["url"] = knowledge_url

        if avatar_session := os.getenv("AVATAR_SESSION_ID"):
            avatar = data.setdefault("avatar", {})
            avatar["session_id"] = avatar_session
            avatar["enabled"] = True

        if log_level := os.getenv("LOG_LEVEL"):
            data["log_level"] = log_level

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RealtimeChatConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
