"""Default decoder for model audio payloads (base64 PCM16)."""

from __future__ import annotations

import base64
import binascii
from collections.abc import Awaitable, Callable

import numpy as np

from talkbridge.audio.base import OUTPUT_SAMPLE_RATE, DecodedAudio

AudioDecoder = Callable[[str | bytes], Awaitable[DecodedAudio]]
"""Async decode collaborator: (payload) -> DecodedAudio."""


def decode_pcm16(
    data: bytes,
    sample_rate: int = OUTPUT_SAMPLE_RATE,
    channels: int = 1,
) -> DecodedAudio:
    """Decode little-endian PCM16 bytes into float32 samples in [-1, 1)."""
    frame_bytes = 2 * channels
    usable = len(data) - (len(data) % frame_bytes)
    pcm = np.frombuffer(data[:usable], dtype="<i2")
    samples = (pcm.astype(np.float32) / 32768.0).astype(np.float32)
    return DecodedAudio(samples=samples, sample_rate=sample_rate, channels=channels)


class Pcm16Decoder:
    """Decodes base64 text (or raw bytes) of PCM16 model audio.

    Args:
        sample_rate: Rate the remote service synthesises at.
        channels: Channel count of the payload.
    """

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE, channels: int = 1) -> None:
        self.sample_rate = sample_rate
        self.channels = channels

    async def __call__(self, payload: str | bytes) -> DecodedAudio:
        if isinstance(payload, str):
            try:
                raw = base64.b64decode(payload, validate=True)
            except binascii.Error as exc:
                raise ValueError(f"Model audio is not valid base64: {exc}") from exc
        else:
            raw = bytes(payload)
        return decode_pcm16(raw, self.sample_rate, self.channels)
