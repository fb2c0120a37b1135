"""Audio data models, PCM16 encoding and speech-activity classification."""

from talkbridge.audio.base import (
    OUTPUT_SAMPLE_RATE,
    PCM_MIME_TYPE,
    PCM_SAMPLE_RATE,
    AudioChunk,
    ChunkPayload,
    DecodedAudio,
    RecordingMetrics,
    RecordingPlatform,
    RecordingStartResult,
    RecordingStopResult,
)
from talkbridge.audio.decode import AudioDecoder, Pcm16Decoder, decode_pcm16
from talkbridge.audio.encoder import (
    VAD_THRESHOLD,
    build_chunk,
    classify_speech,
    float_to_int16,
    rms_int16,
)
from talkbridge.audio.resample import LinearResampler

__all__ = [
    "OUTPUT_SAMPLE_RATE",
    "PCM_MIME_TYPE",
    "PCM_SAMPLE_RATE",
    "VAD_THRESHOLD",
    "AudioChunk",
    "AudioDecoder",
    "ChunkPayload",
    "DecodedAudio",
    "LinearResampler",
    "Pcm16Decoder",
    "RecordingMetrics",
    "RecordingPlatform",
    "RecordingStartResult",
    "RecordingStopResult",
    "build_chunk",
    "classify_speech",
    "decode_pcm16",
    "float_to_int16",
    "rms_int16",
]
