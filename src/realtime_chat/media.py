"""Local audio capture and remote audio sinks.

Wraps aiortc's FFmpeg-backed media helpers so both transports acquire the
microphone the same way and map capture refusals to PermissionDenied.
"""

import base64
import logging
from collections.abc import AsyncIterator

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from aiortc.mediastreams import MediaStreamError

from realtime_chat.config import AudioConfig
from realtime_chat.errors import PermissionDenied

logger = logging.getLogger(__name__)


def open_microphone(config: AudioConfig) -> MediaPlayer:
    """Open the configured capture device.

    Args:
        config: Audio configuration

    Returns:
        MediaPlayer whose ``audio`` track yields microphone frames

    Raises:
        PermissionDenied: If the device cannot be opened or has no audio
    """
    try:
        player = MediaPlayer(config.input_device, format=config.input_format)
    except (OSError, av.error.FFmpegError) as e:
        logger.warning(
            "Microphone capture refused",
            extra={"device": config.input_device, "error": str(e)},
        )
        raise PermissionDenied(
            "Microphone permission denied. Please enable access."
        ) from e

    if player.audio is None:
        raise PermissionDenied(f"Capture device '{config.input_device}' has no audio track")

    logger.info(
        "Microphone opened",
        extra={"device": config.input_device, "format": config.input_format},
    )
    return player


def stop_player(player: MediaPlayer) -> None:
    """Stop every track of a media player."""
    for track in (player.audio, player.video):
        if track is not None:
            track.stop()


def create_remote_sink(config: AudioConfig) -> MediaBlackhole | MediaRecorder:
    """Create the sink that consumes remote audio.

    Records to ``config.output_file`` when set, otherwise discards frames.
    """
    if config.output_file:
        return MediaRecorder(config.output_file)
    return MediaBlackhole()


async def pcm16_chunks(track: MediaStreamTrack, sample_rate: int) -> AsyncIterator[bytes]:
    """Yield mono PCM16 audio from a track, resampled to ``sample_rate``.

    Ends when the track ends.
    """
    resampler = av.AudioResampler(format="s16", layout="mono", rate=sample_rate)
    while True:
        try:
            frame = await track.recv()
        except MediaStreamError:
            return
        for resampled in resampler.resample(frame):
            yield resampled.to_ndarray().tobytes()


def encode_pcm_chunk(chunk: bytes) -> str:
    """Base64-encode a PCM16 chunk for input_audio_buffer.append."""
    return base64.b64encode(chunk).decode("ascii")
