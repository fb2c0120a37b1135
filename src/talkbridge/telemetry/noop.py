"""No-op telemetry provider, the default."""

from __future__ import annotations

from typing import Any

from talkbridge.telemetry.base import SpanKind, TelemetryProvider


class NoopTelemetryProvider(TelemetryProvider):
    @property
    def name(self) -> str:
        return "noop"

    def start_span(self, kind: SpanKind, name: str, **kwargs: Any) -> str:
        return ""

    def end_span(self, span_id: str, **kwargs: Any) -> None:
        pass

    def set_attribute(self, span_id: str, key: str, value: Any) -> None:
        pass

    def record_metric(self, name: str, value: float, **kwargs: Any) -> None:
        pass
