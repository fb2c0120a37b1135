"""Audio controller configuration."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, field_validator, model_validator

from talkbridge.audio.base import OUTPUT_SAMPLE_RATE, PCM_SAMPLE_RATE
from talkbridge.audio.encoder import VAD_THRESHOLD
from talkbridge.capture.paths import PERIODIC_BUFFER_SIZE


class AudioControllerConfig(BaseModel):
    """Configuration for :class:`~talkbridge.controller.AudioController`.

    Example::

        AudioControllerConfig(output_device="USB Headset", chunk_encoding="binary")
    """

    input_sample_rate: int = PCM_SAMPLE_RATE
    output_sample_rate: int = OUTPUT_SAMPLE_RATE
    output_channels: int = 1
    vad_threshold: float = VAD_THRESHOLD
    periodic_buffer_size: int = PERIODIC_BUFFER_SIZE
    low_latency_enabled: bool = True
    chunk_encoding: Literal["base64", "binary"] = "base64"
    input_device: int | str | None = None
    output_device: int | str | None = None
    output_latency: Literal["high", "low"] = "high"

    @field_validator("output_sample_rate", "output_channels", "periodic_buffer_size")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v

    @field_validator("input_sample_rate")
    @classmethod
    def _fixed_capture_rate(cls, v: int) -> int:
        # Chunks are always labelled audio/pcm;rate=16000
        if v != PCM_SAMPLE_RATE:
            raise ValueError(f"input_sample_rate must be {PCM_SAMPLE_RATE}, got {v}")
        return v

    @field_validator("vad_threshold")
    @classmethod
    def _non_negative_threshold(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"vad_threshold must not be negative, got {v}")
        return v

    @model_validator(mode="after")
    def _validate_devices(self) -> AudioControllerConfig:
        for name in ("input_device", "output_device"):
            value = getattr(self, name)
            if isinstance(value, int) and value < 0:
                raise ValueError(f"{name} index must not be negative, got {value}")
            if isinstance(value, str) and not value.strip():
                raise ValueError(f"{name} name must not be empty")
        return self
