"""In-memory telemetry provider for assertions in tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from talkbridge.telemetry.base import Span, SpanKind, TelemetryProvider


@dataclass
class RecordedMetric:
    name: str
    value: float
    unit: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)


class MockTelemetryProvider(TelemetryProvider):
    """Keeps finished spans and every metric.

    Example::

        telemetry = MockTelemetryProvider()
        controller = AudioController(telemetry=telemetry, ...)
        await controller.start_recording(on_chunk)
        assert telemetry.get_spans(SpanKind.CAPTURE_START)[0].status == "ok"
    """

    def __init__(self) -> None:
        self._open: dict[str, Span] = {}
        self.spans: list[Span] = []
        self.metrics: list[RecordedMetric] = []

    @property
    def name(self) -> str:
        return "mock"

    def get_spans(self, kind: SpanKind) -> list[Span]:
        return [s for s in self.spans if s.kind == kind]

    def get_metrics(self, name: str) -> list[RecordedMetric]:
        return [m for m in self.metrics if m.name == name]

    def start_span(
        self, kind: SpanKind, name: str, *, attributes: dict[str, Any] | None = None
    ) -> str:
        span = Span(kind=kind, name=name, attributes=dict(attributes or {}))
        self._open[span.id] = span
        return span.id

    def end_span(
        self,
        span_id: str,
        *,
        status: str = "ok",
        error_message: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        span = self._open.pop(span_id, None)
        if span is not None:
            span.finish(status, error_message, attributes)
            self.spans.append(span)

    def set_attribute(self, span_id: str, key: str, value: Any) -> None:
        if span_id in self._open:
            self._open[span_id].attributes[key] = value

    def record_metric(
        self,
        name: str,
        value: float,
        *,
        unit: str = "",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        self.metrics.append(RecordedMetric(name, value, unit, dict(attributes or {})))

    def reset(self) -> None:
        self._open.clear()
        self.spans.clear()
        self.metrics.clear()
