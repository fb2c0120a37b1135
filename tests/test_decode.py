"""Tests for the PCM16 model audio decoder."""

from __future__ import annotations

import base64

import numpy as np
import pytest

from talkbridge.audio.decode import Pcm16Decoder, decode_pcm16


class TestDecodePcm16:
    def test_scales_to_unit_range(self) -> None:
        raw = np.array([0, 16384, -32768], dtype="<i2").tobytes()
        decoded = decode_pcm16(raw)
        np.testing.assert_allclose(decoded.samples, [0.0, 0.5, -1.0])
        assert decoded.samples.dtype == np.float32
        assert decoded.sample_rate == 24000

    def test_drops_partial_frame(self) -> None:
        decoded = decode_pcm16(b"\x00\x00\x01")
        assert decoded.frames == 1

    def test_stereo_frames(self) -> None:
        decoded = decode_pcm16(bytes(8 * 2 * 2), channels=2)
        assert decoded.frames == 8
        assert decoded.duration == pytest.approx(8 / 24000)


class TestPcm16Decoder:
    async def test_base64_payload(self) -> None:
        payload = base64.b64encode(np.zeros(24000, dtype="<i2").tobytes()).decode()
        decoded = await Pcm16Decoder()(payload)
        assert decoded.duration == pytest.approx(1.0)

    async def test_raw_bytes(self) -> None:
        decoded = await Pcm16Decoder(sample_rate=16000)(bytes(3200))
        assert decoded.duration == pytest.approx(0.1)

    async def test_invalid_base64(self) -> None:
        with pytest.raises(ValueError, match="base64"):
            await Pcm16Decoder()("not base64!!")
