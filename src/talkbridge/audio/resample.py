"""Linear interpolation resampler for capture frames."""

from __future__ import annotations

import numpy as np


class LinearResampler:
    """Streaming linear-interpolation resampler with mono down-mix.

    Converts interleaved float32 device frames to mono at ``target_rate``.
    The fractional read position and the last input sample carry across
    calls so consecutive blocks join without clicks.
    """

    def __init__(self, source_rate: int, target_rate: int, channels: int = 1) -> None:
        if source_rate <= 0 or target_rate <= 0:
            raise ValueError(
                f"sample rates must be positive, got {source_rate} -> {target_rate}"
            )
        self.source_rate = source_rate
        self.target_rate = target_rate
        self.channels = max(1, channels)
        self._step = source_rate / target_rate
        self._position = 0.0
        self._last: float | None = None

    @property
    def passthrough(self) -> bool:
        """Same rate on both sides: blocks are only down-mixed."""
        return self.source_rate == self.target_rate

    def process(self, block: np.ndarray) -> np.ndarray:
        mono = self._to_mono(block)
        if self.passthrough or mono.size == 0:
            return mono

        # Prepend the previous block's tail so interpolation can straddle it
        if self._last is not None:
            data = np.concatenate(([self._last], mono)).astype(np.float32, copy=False)
            offset = 1.0
        else:
            data = mono
            offset = 0.0

        start = self._position + offset
        usable = len(data) - 1
        if usable < start:
            self._position = start - len(data)
            self._last = float(data[-1])
            return np.empty(0, dtype=np.float32)

        positions = np.arange(start, usable, self._step)
        out = np.interp(positions, np.arange(len(data)), data).astype(np.float32)

        next_pos = positions[-1] + self._step if positions.size else start
        # Re-base onto the next block, whose index 0 is this block's last sample
        self._position = next_pos - usable - 1.0
        self._last = float(data[-1])
        return out

    def reset(self) -> None:
        self._position = 0.0
        self._last = None

    def _to_mono(self, block: np.ndarray) -> np.ndarray:
        data = np.asarray(block, dtype=np.float32)
        if data.ndim == 2:
            if data.shape[1] == 1:
                return data[:, 0].copy()
            return data.mean(axis=1).astype(np.float32)
        if self.channels > 1:
            frames = len(data) // self.channels
            return (
                data[: frames * self.channels]
                .reshape(frames, self.channels)
                .mean(axis=1)
                .astype(np.float32)
            )
        return data.copy()
