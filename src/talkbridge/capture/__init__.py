"""Capture negotiation, session ownership and processing paths."""

from talkbridge.capture.constraints import (
    CONSTRAINT_STAGES,
    CaptureConfig,
    ConstraintLadder,
    ConstraintStage,
    ConstraintStageName,
    NegotiationResult,
    StageAttempt,
)
from talkbridge.capture.paths import (
    LOW_LATENCY_UNSUPPORTED,
    PERIODIC_BUFFER_SIZE,
    LowLatencyPath,
    ModuleRegistry,
    PathSelection,
    PeriodicCallbackPath,
    ProcessingPath,
    ProcessingPathSelector,
    default_module_registry,
    reset_module_registry,
)
from talkbridge.capture.session import CaptureSession

__all__ = [
    "CONSTRAINT_STAGES",
    "LOW_LATENCY_UNSUPPORTED",
    "PERIODIC_BUFFER_SIZE",
    "CaptureConfig",
    "CaptureSession",
    "ConstraintLadder",
    "ConstraintStage",
    "ConstraintStageName",
    "LowLatencyPath",
    "ModuleRegistry",
    "NegotiationResult",
    "PathSelection",
    "PeriodicCallbackPath",
    "ProcessingPath",
    "ProcessingPathSelector",
    "StageAttempt",
    "default_module_registry",
    "reset_module_registry",
]
