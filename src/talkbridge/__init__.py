"""TalkBridge - real-time microphone capture and gapless model audio playback."""

from talkbridge._version import __version__
from talkbridge.audio import (
    PCM_MIME_TYPE,
    PCM_SAMPLE_RATE,
    AudioChunk,
    ChunkPayload,
    DecodedAudio,
    Pcm16Decoder,
    RecordingPlatform,
    RecordingStartResult,
    RecordingStopResult,
)
from talkbridge.capture import (
    CONSTRAINT_STAGES,
    CaptureConfig,
    CaptureSession,
    ConstraintLadder,
    ConstraintStageName,
    LowLatencyPath,
    ModuleRegistry,
    PeriodicCallbackPath,
    ProcessingPathSelector,
    reset_module_registry,
)
from talkbridge.config import AudioControllerConfig
from talkbridge.controller import AudioController
from talkbridge.exceptions import (
    AcquisitionError,
    AcquisitionErrorCategory,
    ChunkEmissionError,
    ConstraintNotSatisfiableError,
    ContextNotInitializedError,
    DeviceBusyError,
    DeviceNotFoundError,
    PermissionDeniedError,
    PlaybackError,
    ProcessingSetupError,
    RecordingCancelledError,
    TalkBridgeError,
)
from talkbridge.playback import PlaybackScheduler
from talkbridge.telemetry import (
    ConsoleTelemetryProvider,
    MockTelemetryProvider,
    NoopTelemetryProvider,
    TelemetryProvider,
)

__all__ = [
    "CONSTRAINT_STAGES",
    "PCM_MIME_TYPE",
    "PCM_SAMPLE_RATE",
    "AcquisitionError",
    "AcquisitionErrorCategory",
    "AudioChunk",
    "AudioController",
    "AudioControllerConfig",
    "CaptureConfig",
    "CaptureSession",
    "ChunkEmissionError",
    "ChunkPayload",
    "ConsoleTelemetryProvider",
    "ConstraintLadder",
    "ConstraintNotSatisfiableError",
    "ConstraintStageName",
    "ContextNotInitializedError",
    "DecodedAudio",
    "DeviceBusyError",
    "DeviceNotFoundError",
    "LowLatencyPath",
    "MockTelemetryProvider",
    "ModuleRegistry",
    "NoopTelemetryProvider",
    "Pcm16Decoder",
    "PeriodicCallbackPath",
    "PermissionDeniedError",
    "PlaybackError",
    "PlaybackScheduler",
    "ProcessingPathSelector",
    "ProcessingSetupError",
    "RecordingCancelledError",
    "RecordingPlatform",
    "RecordingStartResult",
    "RecordingStopResult",
    "TalkBridgeError",
    "TelemetryProvider",
    "__version__",
]
