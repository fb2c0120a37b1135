"""Telemetry provider ABC, Span dataclass, SpanKind enum, and Attr constants."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class SpanKind(StrEnum):
    """Span classifications for telemetry."""

    CAPTURE_NEGOTIATE = "capture.negotiate"
    CAPTURE_START = "capture.start"
    PLAYBACK_ENQUEUE = "playback.enqueue"
    CUSTOM = "custom"


class Attr:
    """Well-known attribute key constants for spans and metrics."""

    # Fallback tracking
    SERVICE = "service"
    REASON = "reason"

    # Capture
    CONSTRAINT_STAGE = "capture.constraint_stage"
    FALLBACK_APPLIED = "capture.fallback_applied"
    LOW_LATENCY_USED = "capture.low_latency_used"
    PLATFORM = "capture.platform"

    # Playback
    PLAYBACK_RATE = "playback.rate"
    DURATION_MS = "duration_ms"


class Metric:
    """Metric names recorded by the controller."""

    CAPTURE_FALLBACK = "talkbridge.capture.fallback"
    CHUNK_DROPPED = "talkbridge.capture.chunk_dropped"
    PLAYBACK_SCHEDULED_MS = "talkbridge.playback.scheduled_ms"


@dataclass
class Span:
    """A timed operation."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    kind: SpanKind = SpanKind.CUSTOM
    name: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    status: str = "ok"
    error_message: str | None = None

    @property
    def duration_ms(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def finish(
        self,
        status: str = "ok",
        error_message: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        self.end_time = datetime.now(UTC)
        self.status = status
        self.error_message = error_message
        if attributes:
            self.attributes.update(attributes)


class TelemetryProvider(ABC):
    """Collects span and metric data from capture and playback.

    The default :class:`NoopTelemetryProvider` does nothing.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def start_span(
        self,
        kind: SpanKind,
        name: str,
        *,
        attributes: dict[str, Any] | None = None,
    ) -> str:
        """Start a span and return its ID."""
        ...

    @abstractmethod
    def end_span(
        self,
        span_id: str,
        *,
        status: str = "ok",
        error_message: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None: ...

    @abstractmethod
    def set_attribute(self, span_id: str, key: str, value: Any) -> None: ...

    @abstractmethod
    def record_metric(
        self,
        name: str,
        value: float,
        *,
        unit: str = "",
        attributes: dict[str, Any] | None = None,
    ) -> None: ...

    def close(self) -> None:  # noqa: B027
        """Close the provider and flush pending data."""

    def reset(self) -> None:  # noqa: B027
        """Reset internal state (useful for testing)."""

    @contextmanager
    def span(self, kind: SpanKind, name: str, **kwargs: Any) -> Generator[str, None, None]:
        """Start a span, yield its ID, and end it with error status on exception."""
        span_id = self.start_span(kind, name, **kwargs)
        try:
            yield span_id
        except BaseException as exc:
            self.end_span(span_id, status="error", error_message=str(exc) or type(exc).__name__)
            raise
        self.end_span(span_id)
