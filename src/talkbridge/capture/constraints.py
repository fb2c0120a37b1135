"""Capture configuration ladder.

Capture requests are tried from the most specific configuration down to a
bare "any audio input" request until the device accepts one.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum, unique
from typing import TYPE_CHECKING, Any

from talkbridge.audio.base import PCM_SAMPLE_RATE
from talkbridge.exceptions import AcquisitionError, AcquisitionErrorCategory

if TYPE_CHECKING:
    from talkbridge.engine.base import DeviceStream

logger = logging.getLogger("talkbridge.capture.constraints")


@unique
class ConstraintStageName(StrEnum):
    ENHANCED = "enhanced"
    REDUCED = "reduced"
    MINIMAL = "minimal"
    DEFAULT = "default"


@dataclass(frozen=True)
class CaptureConfig:
    """A capture device request. ``None`` fields are left to the device."""

    channel_count: int | None = None
    sample_rate: int | None = None
    sample_size: int | None = None
    """Bits per sample."""

    echo_cancellation: bool | None = None
    noise_suppression: bool | None = None
    auto_gain_control: bool | None = None

    @property
    def any_input(self) -> bool:
        """True when nothing is pinned and any audio input will do."""
        return not self.to_dict()

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("channel_count", self.channel_count),
                ("sample_rate", self.sample_rate),
                ("sample_size", self.sample_size),
                ("echo_cancellation", self.echo_cancellation),
                ("noise_suppression", self.noise_suppression),
                ("auto_gain_control", self.auto_gain_control),
            )
            if value is not None
        }


@dataclass(frozen=True)
class ConstraintStage:
    name: ConstraintStageName
    request: CaptureConfig


CONSTRAINT_STAGES: tuple[ConstraintStage, ...] = (
    ConstraintStage(
        ConstraintStageName.ENHANCED,
        CaptureConfig(
            channel_count=1,
            sample_rate=PCM_SAMPLE_RATE,
            sample_size=16,
            echo_cancellation=True,
            noise_suppression=True,
            auto_gain_control=True,
        ),
    ),
    ConstraintStage(
        ConstraintStageName.REDUCED,
        CaptureConfig(
            channel_count=1,
            echo_cancellation=True,
            noise_suppression=True,
            auto_gain_control=True,
        ),
    ),
    ConstraintStage(ConstraintStageName.MINIMAL, CaptureConfig(channel_count=1)),
    ConstraintStage(ConstraintStageName.DEFAULT, CaptureConfig()),
)

AcquireFn = Callable[[CaptureConfig], Awaitable["DeviceStream"]]


@dataclass
class StageAttempt:
    """One ladder step: the stage tried and the error it failed with, if any."""

    stage: ConstraintStageName
    error: AcquisitionError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class NegotiationResult:
    stage: ConstraintStage
    stream: DeviceStream
    attempts: list[StageAttempt] = field(default_factory=list)

    @property
    def fallback_applied(self) -> bool:
        return self.stage.name != ConstraintStageName.ENHANCED


class ConstraintLadder:
    """Negotiates a capture stream against an ordered list of stages.

    A stage that succeeds ends the negotiation immediately. Fatal errors
    (permission denied, no device, device busy) abort the whole ladder;
    anything else is recorded and the next stage is tried. When every stage
    fails, the last recorded error is raised.

    Args:
        stages: Stages in the order they are tried.
    """

    def __init__(self, stages: tuple[ConstraintStage, ...] = CONSTRAINT_STAGES) -> None:
        if not stages:
            raise ValueError("ConstraintLadder needs at least one stage")
        self.stages = stages
        self.attempts: list[StageAttempt] = []

    @property
    def requested(self) -> ConstraintStage:
        """The most specific stage, i.e. what was asked for first."""
        return self.stages[0]

    async def negotiate(self, acquire: AcquireFn) -> NegotiationResult:
        self.attempts = []
        last_error: AcquisitionError | None = None

        for stage in self.stages:
            try:
                stream = await acquire(stage.request)
            except AcquisitionError as exc:
                error = exc
            except Exception as exc:
                error = AcquisitionError(
                    str(exc) or type(exc).__name__,
                    category=AcquisitionErrorCategory.GENERIC,
                )
                error.__cause__ = exc
            else:
                self.attempts.append(StageAttempt(stage.name))
                if stage is not self.stages[0]:
                    logger.info("Capture negotiated at relaxed stage %s", stage.name)
                return NegotiationResult(stage=stage, stream=stream, attempts=list(self.attempts))

            if error.stage is None:
                error.stage = stage.name
            self.attempts.append(StageAttempt(stage.name, error))

            if error.fatal:
                logger.warning(
                    "Capture stage %s failed fatally (%s); aborting ladder",
                    stage.name,
                    error.category,
                )
                raise error

            logger.warning(
                "Capture stage %s rejected (%s): %s", stage.name, error.category, error
            )
            last_error = error

        assert last_error is not None
        raise last_error
