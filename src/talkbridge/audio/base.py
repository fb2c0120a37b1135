"""Data models shared by the capture and playback sides."""

from __future__ import annotations

import base64
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum, unique
from typing import Any

import numpy as np

PCM_SAMPLE_RATE = 16000
PCM_MIME_TYPE = f"audio/pcm;rate={PCM_SAMPLE_RATE}"
OUTPUT_SAMPLE_RATE = 24000


@unique
class RecordingPlatform(StrEnum):
    """Coarse host classification reported alongside a successful start."""

    DESKTOP = "desktop"
    MOBILE = "mobile"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AudioChunk:
    """One processed capture buffer, ready for the outbound callback.

    Transient: produced per buffer and handed straight to the network
    collaborator, never retained.
    """

    samples: np.ndarray
    """Mono int16 samples at :data:`PCM_SAMPLE_RATE`."""

    mime_type: str = PCM_MIME_TYPE
    is_speaking: bool = False
    duration_ms: float = 0.0
    rms: float = 0.0

    @property
    def data(self) -> bytes:
        """Little-endian PCM16 bytes."""
        return self.samples.astype("<i2", copy=False).tobytes()

    def to_payload(self, *, binary: bool = False) -> ChunkPayload:
        data: str | bytes = self.data
        if not binary:
            data = base64.b64encode(data).decode("ascii")
        return ChunkPayload(
            data=data,
            mime_type=self.mime_type,
            is_speaking=self.is_speaking,
            duration_ms=self.duration_ms,
            rms=self.rms,
        )


@dataclass(frozen=True)
class ChunkPayload:
    """What the outbound chunk callback receives."""

    data: str | bytes
    """Base64 text of the PCM16 payload, or the raw bytes in binary mode."""

    mime_type: str
    is_speaking: bool
    duration_ms: float
    rms: float

    def to_dict(self) -> dict[str, Any]:
        """Wire shape expected by the realtime session."""
        return {
            "data": self.data,
            "mimeType": self.mime_type,
            "isSpeaking": self.is_speaking,
            "durationMs": self.duration_ms,
            "rms": self.rms,
        }


@dataclass(frozen=True)
class DecodedAudio:
    """Decoded model audio, ready to be scheduled on the output timeline."""

    samples: np.ndarray
    """Float32 samples in [-1, 1], interleaved when ``channels > 1``."""

    sample_rate: int = OUTPUT_SAMPLE_RATE
    channels: int = 1

    @property
    def frames(self) -> int:
        return len(self.samples) // self.channels

    @property
    def duration(self) -> float:
        """Duration in seconds at a playback rate of 1."""
        return self.frames / self.sample_rate


@dataclass
class RecordingMetrics:
    """Timing of one recording, finalised when it stops."""

    started_at: float = field(default_factory=lambda: time.time() * 1000)
    """Wall-clock start in epoch milliseconds."""

    stopped_at: float | None = None
    segment_ms: float | None = None

    def finalize(self, stopped_at: float | None = None) -> RecordingStopResult:
        self.stopped_at = stopped_at if stopped_at is not None else time.time() * 1000
        self.segment_ms = max(0.0, self.stopped_at - self.started_at)
        return RecordingStopResult(segment_ms=self.segment_ms, stopped_at=self.stopped_at)


@dataclass(frozen=True)
class RecordingStopResult:
    segment_ms: float
    stopped_at: float


@dataclass(frozen=True)
class RecordingStartResult:
    """Diagnostic metadata returned by a successful ``start_recording``.

    Internal fallbacks (ladder relaxation, processing-path downgrade) are
    invisible to the end user except through these fields.
    """

    platform: RecordingPlatform
    constraint_stage: str
    fallback_applied: bool
    low_latency_used: bool
    low_latency_fallback_reason: str | None
    requested_config: dict[str, Any]
    applied_config: dict[str, Any]
    track_settings: dict[str, Any] | None = None
    track_capabilities: dict[str, Any] | None = None


# Callback type aliases
ChunkCallback = Callable[[ChunkPayload], Any]
"""Outbound chunk callback: (payload)."""

StartCallback = Callable[[float], Any]
"""Recording started: (started_at_ms)."""

StopCallback = Callable[[float, float], Any]
"""Recording stopped: (segment_ms, stopped_at_ms)."""

ErrorCallback = Callable[[BaseException], Any]
"""Recording failed: (error)."""
