"""Audio engines: the routing graph, capture devices and the output timeline.

The PortAudio engines live in :mod:`talkbridge.engine.local` and are not
imported here so that the package imports without ``sounddevice``.
"""

from talkbridge.engine.base import (
    PCM_ENCODER_MODULE,
    BufferSource,
    CaptureEngine,
    DeviceStream,
    DeviceTrack,
    EngineState,
    GainNode,
    GraphNode,
    OutputEngine,
    SourceNode,
    TrackState,
)
from talkbridge.engine.mock import (
    MockBufferSource,
    MockCaptureEngine,
    MockDeviceTrack,
    MockOutputEngine,
)

__all__ = [
    "PCM_ENCODER_MODULE",
    "BufferSource",
    "CaptureEngine",
    "DeviceStream",
    "DeviceTrack",
    "EngineState",
    "GainNode",
    "GraphNode",
    "MockBufferSource",
    "MockCaptureEngine",
    "MockDeviceTrack",
    "MockOutputEngine",
    "OutputEngine",
    "SourceNode",
    "TrackState",
]
