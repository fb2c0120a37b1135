"""Exception hierarchy for talkbridge."""

from __future__ import annotations

from enum import StrEnum, unique


@unique
class AcquisitionErrorCategory(StrEnum):
    """Why a capture device request was refused."""

    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    CONSTRAINT_NOT_SATISFIABLE = "constraint_not_satisfiable"
    GENERIC = "generic"


_FATAL_CATEGORIES = frozenset(
    {
        AcquisitionErrorCategory.PERMISSION_DENIED,
        AcquisitionErrorCategory.DEVICE_NOT_FOUND,
        AcquisitionErrorCategory.DEVICE_BUSY,
    }
)


class TalkBridgeError(Exception):
    """Base exception for all talkbridge errors."""


class ContextNotInitializedError(TalkBridgeError):
    """Raised when recording starts before ``initialize_contexts()``."""


class RecordingCancelledError(TalkBridgeError):
    """Raised when a recording was stopped while ``start_recording`` was suspended."""


class AcquisitionError(TalkBridgeError):
    """The capture device refused a configuration request.

    Attributes:
        category: Classified reason for the refusal.
        stage: Name of the ladder stage being attempted, if known.
    """

    category: AcquisitionErrorCategory = AcquisitionErrorCategory.GENERIC

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        category: AcquisitionErrorCategory | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        if category is not None:
            self.category = category

    @property
    def fatal(self) -> bool:
        """Fatal errors abort the ladder; the rest let it relax to the next stage."""
        return self.category in _FATAL_CATEGORIES


class PermissionDeniedError(AcquisitionError):
    category = AcquisitionErrorCategory.PERMISSION_DENIED

    def __init__(
        self,
        message: str = (
            "Microphone permission denied. Allow microphone access for this "
            "application in your system privacy settings and try again."
        ),
        *,
        stage: str | None = None,
    ) -> None:
        super().__init__(message, stage=stage)


class DeviceNotFoundError(AcquisitionError):
    category = AcquisitionErrorCategory.DEVICE_NOT_FOUND

    def __init__(
        self,
        message: str = "No microphone found. Check that a microphone is connected.",
        *,
        stage: str | None = None,
    ) -> None:
        super().__init__(message, stage=stage)


class DeviceBusyError(AcquisitionError):
    category = AcquisitionErrorCategory.DEVICE_BUSY

    def __init__(
        self,
        message: str = (
            "The microphone is already in use by another application. "
            "Close other applications using the microphone."
        ),
        *,
        stage: str | None = None,
    ) -> None:
        super().__init__(message, stage=stage)


class ConstraintNotSatisfiableError(AcquisitionError):
    category = AcquisitionErrorCategory.CONSTRAINT_NOT_SATISFIABLE


class ProcessingSetupError(TalkBridgeError):
    """A processing path could not be wired onto the capture stream."""


class ChunkEmissionError(TalkBridgeError):
    """A single captured buffer could not be turned into an outbound chunk."""


class PlaybackError(TalkBridgeError):
    """A decoded segment could not be scheduled for playback."""


__all__ = [
    "AcquisitionError",
    "AcquisitionErrorCategory",
    "ChunkEmissionError",
    "ConstraintNotSatisfiableError",
    "ContextNotInitializedError",
    "DeviceBusyError",
    "DeviceNotFoundError",
    "PermissionDeniedError",
    "PlaybackError",
    "ProcessingSetupError",
    "RecordingCancelledError",
    "TalkBridgeError",
]
