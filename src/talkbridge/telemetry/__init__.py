"""Telemetry providers for capture and playback."""

from talkbridge.telemetry.base import Attr, Metric, Span, SpanKind, TelemetryProvider
from talkbridge.telemetry.console import ConsoleTelemetryProvider
from talkbridge.telemetry.fallback import FallbackTracker
from talkbridge.telemetry.mock import MockTelemetryProvider, RecordedMetric
from talkbridge.telemetry.noop import NoopTelemetryProvider

__all__ = [
    "Attr",
    "ConsoleTelemetryProvider",
    "FallbackTracker",
    "Metric",
    "MockTelemetryProvider",
    "NoopTelemetryProvider",
    "RecordedMetric",
    "Span",
    "SpanKind",
    "TelemetryProvider",
]
