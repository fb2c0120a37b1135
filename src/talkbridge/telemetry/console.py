"""Console telemetry provider: span and metric summaries through logging."""

from __future__ import annotations

import logging
from typing import Any

from talkbridge.telemetry.base import Span, SpanKind, TelemetryProvider

logger = logging.getLogger("talkbridge.telemetry")


def _format_attributes(attributes: dict[str, Any]) -> str:
    if not attributes:
        return ""
    return " [" + ", ".join(f"{k}={v}" for k, v in attributes.items()) + "]"


class ConsoleTelemetryProvider(TelemetryProvider):
    """Logs spans and metrics to the ``talkbridge.telemetry`` logger.

    Example::

        logging.basicConfig(level=logging.INFO)
        controller = AudioController(telemetry=ConsoleTelemetryProvider())
    """

    def __init__(self, *, level: int = logging.INFO) -> None:
        self._level = level
        self._active: dict[str, Span] = {}

    @property
    def name(self) -> str:
        return "console"

    def start_span(
        self,
        kind: SpanKind,
        name: str,
        *,
        attributes: dict[str, Any] | None = None,
    ) -> str:
        span = Span(
            kind=kind,
            name=name,
            attributes=dict(attributes) if attributes else {},
        )
        self._active[span.id] = span
        logger.log(self._level, "[SPAN START] %s %s (id=%s)", kind, name, span.id)
        return span.id

    def end_span(
        self,
        span_id: str,
        *,
        status: str = "ok",
        error_message: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        span = self._active.pop(span_id, None)
        if span is None:
            return
        span.finish(status, error_message, attributes)

        duration = f" {span.duration_ms:.1f}ms" if span.duration_ms is not None else ""
        attrs = _format_attributes(span.attributes)
        if status == "error":
            logger.log(
                self._level,
                "[SPAN ERROR] %s %s%s%s error=%s",
                span.kind,
                span.name,
                duration,
                attrs,
                error_message or "unknown",
            )
        else:
            logger.log(self._level, "[SPAN END] %s %s%s%s", span.kind, span.name, duration, attrs)

    def set_attribute(self, span_id: str, key: str, value: Any) -> None:
        span = self._active.get(span_id)
        if span is not None:
            span.attributes[key] = value

    def record_metric(
        self,
        name: str,
        value: float,
        *,
        unit: str = "",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        unit_str = f" {unit}" if unit else ""
        logger.log(
            self._level,
            "[METRIC] %s = %.2f%s%s",
            name,
            value,
            unit_str,
            _format_attributes(attributes or {}),
        )

    def close(self) -> None:
        if self._active:
            logger.warning(
                "ConsoleTelemetryProvider closed with %d active spans", len(self._active)
            )
        self._active.clear()

    def reset(self) -> None:
        self._active.clear()
