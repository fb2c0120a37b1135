"""PCM16 encoding and energy-based speech classification.

Every function here is pure: no state survives between calls, so both
processing paths share them without coordination.
"""

from __future__ import annotations

import numpy as np

from talkbridge.audio.base import PCM_MIME_TYPE, PCM_SAMPLE_RATE, AudioChunk
from talkbridge.exceptions import ChunkEmissionError

VAD_THRESHOLD = 400.0
"""RMS (int16 scale) above which a buffer counts as speech."""


def float_to_int16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples to int16.

    Samples are clamped to [-1, 1]; negative values scale by 32768 and
    non-negative values by 32767, so -1.0 maps to -32768 and 1.0 to 32767.
    Fractions truncate toward zero.
    """
    clamped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clamped < 0, clamped * 32768.0, clamped * 32767.0)
    return np.trunc(scaled).astype(np.int16)


def rms_int16(samples: np.ndarray) -> float:
    """Root-mean-square of int16 samples. Empty input yields 0.0."""
    if len(samples) == 0:
        return 0.0
    values = np.asarray(samples, dtype=np.float64)
    return float(np.sqrt(np.mean(values * values)))


def classify_speech(rms: float, threshold: float = VAD_THRESHOLD) -> bool:
    return rms > threshold


def build_chunk(
    samples: np.ndarray,
    source_sample_rate: int = PCM_SAMPLE_RATE,
    *,
    threshold: float = VAD_THRESHOLD,
) -> AudioChunk:
    """Wrap int16 samples as an :class:`AudioChunk`.

    Duration is always computed against 16 kHz and the mime type is always
    ``audio/pcm;rate=16000``: both processing paths capture at that rate.

    Raises:
        ChunkEmissionError: If the samples are not a one-dimensional int16 buffer.
    """
    pcm = np.asarray(samples)
    if pcm.ndim != 1 or pcm.dtype != np.int16:
        raise ChunkEmissionError(
            f"expected mono int16 samples, got dtype={pcm.dtype} ndim={pcm.ndim}"
        )
    if source_sample_rate != PCM_SAMPLE_RATE:
        raise ChunkEmissionError(
            f"capture must run at {PCM_SAMPLE_RATE}Hz, got {source_sample_rate}Hz"
        )
    rms = rms_int16(pcm)
    return AudioChunk(
        samples=pcm,
        mime_type=PCM_MIME_TYPE,
        is_speaking=classify_speech(rms, threshold),
        duration_ms=len(pcm) / PCM_SAMPLE_RATE * 1000,
        rms=rms,
    )


def int16_from_bytes(buffer: bytes) -> np.ndarray:
    """View little-endian PCM16 bytes as int16 samples (odd byte dropped)."""
    usable = len(buffer) - (len(buffer) % 2)
    return np.frombuffer(buffer[:usable], dtype="<i2").astype(np.int16, copy=False)
