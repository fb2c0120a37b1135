"""Mock audio engines for testing."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from talkbridge.audio.base import OUTPUT_SAMPLE_RATE, PCM_SAMPLE_RATE
from talkbridge.engine.base import (
    BufferCallback,
    BufferSource,
    CaptureEngine,
    DeviceStream,
    DeviceTrack,
    GraphNode,
    NodeMessageCallback,
    OutputEngine,
    SourceNode,
    TrackState,
)

if TYPE_CHECKING:
    from talkbridge.audio.base import DecodedAudio
    from talkbridge.capture.constraints import CaptureConfig


@dataclass
class MockEngineCall:
    """Record of a call made to a mock engine."""

    method: str
    args: dict[str, Any] = field(default_factory=dict)


class MockDeviceTrack(DeviceTrack):
    """Track whose liveness tests flip with :meth:`end`."""

    def __init__(self, config: CaptureConfig, label: str = "mock-mic") -> None:
        super().__init__(label)
        self.config = config
        self.stopped = False
        self._state = TrackState.LIVE

    @property
    def ready_state(self) -> TrackState:
        return self._state

    def stop(self) -> None:
        self.stopped = True
        self._state = TrackState.ENDED

    def end(self) -> None:
        """Simulate the device going away outside the controller's control."""
        self._state = TrackState.ENDED
        self._fire_ended()

    def settings(self) -> dict[str, Any]:
        return {
            "device_id": self.label,
            "channel_count": self.config.channel_count or 1,
            "sample_rate": self.config.sample_rate or PCM_SAMPLE_RATE,
        }

    def capabilities(self) -> dict[str, Any] | None:
        return {"channel_count": (1, 2), "sample_rate": (8000, 48000)}


class MockLowLatencyNode(GraphNode):
    def __init__(self, on_message: NodeMessageCallback) -> None:
        super().__init__("low-latency")
        self.on_message = on_message
        self.closed = False

    def post(self, message: dict[str, Any]) -> None:
        """Deliver a message as the processing thread would."""
        self.on_message(message)

    def post_chunk(self, samples: np.ndarray) -> None:
        self.post({"type": "chunk", "buffer": np.asarray(samples, dtype="<i2").tobytes()})

    def close(self) -> None:
        self.closed = True
        super().close()


class MockPeriodicNode(GraphNode):
    def __init__(self, buffer_size: int, on_buffer: BufferCallback) -> None:
        super().__init__("periodic")
        self.buffer_size = buffer_size
        self.on_buffer = on_buffer
        self.closed = False

    def feed(self, samples: np.ndarray) -> None:
        self.on_buffer(np.asarray(samples, dtype=np.float32))

    def close(self) -> None:
        self.closed = True
        super().close()


class MockCaptureEngine(CaptureEngine):
    """Scriptable capture engine.

    Example::

        engine = MockCaptureEngine(
            acquire_outcomes=[ConstraintNotSatisfiableError("no 16k"), None],
        )
        stream = ...  # second acquire succeeds
        assert [c.method for c in engine.calls] == ["acquire", "acquire"]

    Args:
        acquire_outcomes: Consumed one per ``acquire`` call. An exception
            is raised, ``None`` succeeds. Calls past the end succeed.
        low_latency: Whether the engine reports the low-latency facility.
        install_error: Raised by ``install_module``.
        on_install: Invoked while ``install_module`` is suspended, e.g. to
            end the current track.
        low_latency_error: Raised by ``create_low_latency_node``.
        periodic_error: Raised by ``create_periodic_node``.
    """

    def __init__(
        self,
        *,
        acquire_outcomes: list[BaseException | None] | None = None,
        low_latency: bool = True,
        install_error: BaseException | None = None,
        on_install: Callable[[], Any] | None = None,
        low_latency_error: BaseException | None = None,
        periodic_error: BaseException | None = None,
    ) -> None:
        super().__init__()
        self.acquire_outcomes = list(acquire_outcomes or [])
        self.low_latency = low_latency
        self.install_error = install_error
        self.on_install = on_install
        self.low_latency_error = low_latency_error
        self.periodic_error = periodic_error

        self.calls: list[MockEngineCall] = []
        self.tracks: list[MockDeviceTrack] = []
        self.sources: list[SourceNode] = []
        self.low_latency_nodes: list[MockLowLatencyNode] = []
        self.periodic_nodes: list[MockPeriodicNode] = []
        self.gains: list[GraphNode] = []
        self.installed: list[str] = []

    @property
    def sample_rate(self) -> int:
        return PCM_SAMPLE_RATE

    @property
    def supports_low_latency(self) -> bool:
        return self.low_latency

    @property
    def acquired_configs(self) -> list[CaptureConfig]:
        return [c.args["config"] for c in self.calls if c.method == "acquire"]

    @property
    def current_track(self) -> MockDeviceTrack | None:
        return self.tracks[-1] if self.tracks else None

    async def acquire(self, config: CaptureConfig) -> DeviceStream:
        self.calls.append(MockEngineCall("acquire", {"config": config}))
        await asyncio.sleep(0)
        if self.acquire_outcomes:
            outcome = self.acquire_outcomes.pop(0)
            if outcome is not None:
                raise outcome
        track = MockDeviceTrack(config)
        self.tracks.append(track)
        return DeviceStream(
            track=track,
            config=config,
            sample_rate=config.sample_rate or PCM_SAMPLE_RATE,
            channels=config.channel_count or 1,
        )

    def create_source(self, stream: DeviceStream) -> SourceNode:
        self.calls.append(MockEngineCall("create_source", {"track_id": stream.track.id}))
        node = SourceNode(stream, "source")
        self.sources.append(node)
        return node

    async def install_module(self, name: str) -> None:
        self.calls.append(MockEngineCall("install_module", {"name": name}))
        await asyncio.sleep(0)
        if self.on_install is not None:
            self.on_install()
        if self.install_error is not None:
            raise self.install_error
        self.installed.append(name)

    def create_low_latency_node(self, on_message: NodeMessageCallback) -> GraphNode:
        self.calls.append(MockEngineCall("create_low_latency_node"))
        if self.low_latency_error is not None:
            raise self.low_latency_error
        node = MockLowLatencyNode(on_message)
        self.low_latency_nodes.append(node)
        return node

    def create_periodic_node(self, buffer_size: int, on_buffer: BufferCallback) -> GraphNode:
        self.calls.append(MockEngineCall("create_periodic_node", {"buffer_size": buffer_size}))
        if self.periodic_error is not None:
            raise self.periodic_error
        node = MockPeriodicNode(buffer_size, on_buffer)
        self.periodic_nodes.append(node)
        return node

    def create_gain(self, value: float = 1.0) -> Any:
        gain = super().create_gain(value)
        self.gains.append(gain)
        return gain


class MockBufferSource(BufferSource):
    def finish(self) -> None:
        """Simulate the buffer playing to its end."""
        self._fire_ended()


class MockOutputEngine(OutputEngine):
    """Output engine with a manually advanced clock."""

    def __init__(self, *, sample_rate: int = OUTPUT_SAMPLE_RATE, start_time: float = 0.0) -> None:
        super().__init__()
        self._sample_rate = sample_rate
        self._time = start_time
        self.sources: list[MockBufferSource] = []
        self.buffer_source_error: BaseException | None = None

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def current_time(self) -> float:
        return self._time

    def advance(self, seconds: float) -> None:
        self._time += seconds

    def create_buffer_source(self, decoded: DecodedAudio) -> BufferSource:
        if self.buffer_source_error is not None:
            raise self.buffer_source_error
        source = MockBufferSource(decoded)
        self.sources.append(source)
        return source
