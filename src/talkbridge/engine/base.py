"""Audio engine abstractions: capture graph, device tracks and output timeline.

An engine owns a small routing graph. Capture engines pump a device stream
only while its source node is connected, directly or through other nodes,
to the engine's ``destination``. Output engines render every buffer source
that reaches their destination against a sample-accurate clock.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum, unique
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import numpy as np

    from talkbridge.audio.base import DecodedAudio
    from talkbridge.capture.constraints import CaptureConfig

logger = logging.getLogger("talkbridge.engine")

PCM_ENCODER_MODULE = "pcm-encoder"
"""Processing module that backs low-latency nodes."""

# Message posted by a low-latency node: {"type": "chunk", "buffer": bytes}
# or {"type": "error", "message": str}.
NodeMessageCallback = Callable[[dict[str, Any]], Any]

# Fixed-size mono float32 buffer delivered by a periodic node.
BufferCallback = Callable[["np.ndarray"], Any]

EndedCallback = Callable[[], Any]


@unique
class EngineState(StrEnum):
    SUSPENDED = "suspended"
    RUNNING = "running"
    CLOSED = "closed"


@unique
class TrackState(StrEnum):
    LIVE = "live"
    ENDED = "ended"


class DeviceTrack(ABC):
    """A single capture track of an acquired device stream.

    ``ready_state`` reflects the device as it is now. It can move to
    ``ENDED`` at any time, e.g. when the device is unplugged or the OS
    revokes access, so callers must query it instead of caching it.
    """

    def __init__(self, label: str = "") -> None:
        self.id = uuid.uuid4().hex
        self.label = label
        self._ended_listeners: list[EndedCallback] = []
        self._muted_listeners: list[Callable[[bool], Any]] = []

    @property
    @abstractmethod
    def ready_state(self) -> TrackState: ...

    @abstractmethod
    def stop(self) -> None:
        """Release the device. Idempotent."""
        ...

    @abstractmethod
    def settings(self) -> dict[str, Any]:
        """What the device actually applied."""
        ...

    def capabilities(self) -> dict[str, Any] | None:
        """Ranges the device supports, when the platform reports them."""
        return None

    def on_ended(self, callback: EndedCallback) -> None:
        self._ended_listeners.append(callback)

    def on_muted(self, callback: Callable[[bool], Any]) -> None:
        self._muted_listeners.append(callback)

    def _fire_ended(self) -> None:
        for cb in list(self._ended_listeners):
            try:
                cb()
            except Exception:
                logger.exception("Track ended listener failed")

    def _fire_muted(self, muted: bool) -> None:
        for cb in list(self._muted_listeners):
            try:
                cb(muted)
            except Exception:
                logger.exception("Track muted listener failed")


@dataclass
class DeviceStream:
    """An acquired capture stream and the configuration it was opened with."""

    track: DeviceTrack
    config: CaptureConfig
    sample_rate: int
    channels: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    def stop(self) -> None:
        self.track.stop()


class GraphNode:
    """A node in an engine routing graph."""

    def __init__(self, name: str = "") -> None:
        self.name = name or type(self).__name__
        self.outputs: list[GraphNode] = []

    def connect(self, target: GraphNode) -> GraphNode:
        if target not in self.outputs:
            self.outputs.append(target)
        return target

    def disconnect(self, target: GraphNode | None = None) -> None:
        """Disconnect from ``target``, or from every output when omitted."""
        if target is None:
            self.outputs.clear()
        elif target in self.outputs:
            self.outputs.remove(target)

    def gain_to(self, target: GraphNode) -> float | None:
        """Accumulated gain along the first route to ``target``.

        Returns ``None`` when ``target`` is unreachable.
        """
        return self._gain_to(target, set())

    def reaches(self, target: GraphNode) -> bool:
        return self.gain_to(target) is not None

    def close(self) -> None:
        """Release node resources. Idempotent."""
        self.disconnect()

    def _own_gain(self) -> float:
        return 1.0

    def _gain_to(self, target: GraphNode, seen: set[int]) -> float | None:
        if self is target:
            return 1.0
        seen.add(id(self))
        for out in self.outputs:
            if id(out) in seen:
                continue
            downstream = out._gain_to(target, seen)
            if downstream is not None:
                return self._own_gain() * downstream
        return None


class GainNode(GraphNode):
    def __init__(self, value: float = 1.0, name: str = "") -> None:
        super().__init__(name)
        self.value = value

    def _own_gain(self) -> float:
        return self.value


class SourceNode(GraphNode):
    """Graph entry point for a capture stream."""

    def __init__(self, stream: DeviceStream, name: str = "") -> None:
        super().__init__(name)
        self.stream = stream


class BufferSource(GraphNode):
    """A one-shot playback source for a decoded buffer.

    ``ended`` listeners fire once, when playback reaches the end of the
    buffer or when :meth:`stop` is called.
    """

    def __init__(self, decoded: DecodedAudio, name: str = "") -> None:
        super().__init__(name)
        self.decoded = decoded
        self.playback_rate = 1.0
        self.start_time: float | None = None
        self.stopped = False
        self.ended = False
        self._ended_listeners: list[EndedCallback] = []

    def add_ended_listener(self, callback: EndedCallback) -> None:
        self._ended_listeners.append(callback)

    def start(self, when: float = 0.0) -> None:
        if self.start_time is not None:
            raise RuntimeError("buffer source already started")
        self.start_time = max(0.0, when)

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        self._fire_ended()

    def _fire_ended(self) -> None:
        if self.ended:
            return
        self.ended = True
        for cb in list(self._ended_listeners):
            try:
                cb()
            except Exception:
                logger.exception("Buffer source ended listener failed")


class CaptureEngine(ABC):
    """Input side of the audio environment."""

    def __init__(self) -> None:
        self._state = EngineState.SUSPENDED
        self.destination = GraphNode("destination")

    @property
    def state(self) -> EngineState:
        return self._state

    async def resume(self) -> None:
        if self._state is EngineState.SUSPENDED:
            self._state = EngineState.RUNNING

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        """Graph rate that processing nodes observe."""
        ...

    @property
    def supports_low_latency(self) -> bool:
        return False

    @abstractmethod
    async def acquire(self, config: CaptureConfig) -> DeviceStream:
        """Open the capture device with ``config``.

        Raises:
            AcquisitionError: Classified refusal from the device layer.
        """
        ...

    @abstractmethod
    def create_source(self, stream: DeviceStream) -> SourceNode: ...

    async def install_module(self, name: str) -> None:
        """Load the processing module backing low-latency nodes."""
        raise NotImplementedError(f"{type(self).__name__} has no low-latency facility")

    def create_low_latency_node(self, on_message: NodeMessageCallback) -> GraphNode:
        raise NotImplementedError(f"{type(self).__name__} has no low-latency facility")

    @abstractmethod
    def create_periodic_node(self, buffer_size: int, on_buffer: BufferCallback) -> GraphNode: ...

    def create_gain(self, value: float = 1.0) -> GainNode:
        return GainNode(value)

    async def close(self) -> None:
        self._state = EngineState.CLOSED


class OutputEngine(ABC):
    """Output side of the audio environment."""

    def __init__(self) -> None:
        self._state = EngineState.SUSPENDED
        self.destination = GraphNode("destination")

    @property
    def state(self) -> EngineState:
        return self._state

    async def resume(self) -> None:
        if self._state is EngineState.SUSPENDED:
            self._state = EngineState.RUNNING

    @property
    @abstractmethod
    def sample_rate(self) -> int: ...

    @property
    @abstractmethod
    def current_time(self) -> float:
        """Render clock in seconds."""
        ...

    @abstractmethod
    def create_buffer_source(self, decoded: DecodedAudio) -> BufferSource: ...

    def create_gain(self, value: float = 1.0) -> GainNode:
        return GainNode(value)

    async def close(self) -> None:
        self._state = EngineState.CLOSED
