"""Tests for telemetry providers and fallback tracking."""

from __future__ import annotations

import logging

import pytest

from talkbridge.telemetry import (
    Attr,
    ConsoleTelemetryProvider,
    FallbackTracker,
    Metric,
    MockTelemetryProvider,
    NoopTelemetryProvider,
    SpanKind,
)


class TestMockTelemetryProvider:
    def test_span_lifecycle(self) -> None:
        telemetry = MockTelemetryProvider()
        span_id = telemetry.start_span(SpanKind.CAPTURE_START, "start", attributes={"a": 1})
        telemetry.set_attribute(span_id, "b", 2)
        telemetry.end_span(span_id, attributes={"c": 3})

        [span] = telemetry.get_spans(SpanKind.CAPTURE_START)
        assert span.attributes == {"a": 1, "b": 2, "c": 3}
        assert span.status == "ok"
        assert span.duration_ms is not None

    def test_span_context_records_error(self) -> None:
        telemetry = MockTelemetryProvider()
        with pytest.raises(RuntimeError), telemetry.span(SpanKind.CUSTOM, "work"):
            raise RuntimeError("failed")

        [span] = telemetry.spans
        assert span.status == "error"
        assert span.error_message == "failed"

    def test_metrics_and_reset(self) -> None:
        telemetry = MockTelemetryProvider()
        telemetry.record_metric("m", 1.5, unit="ms")
        [metric] = telemetry.get_metrics("m")
        assert (metric.value, metric.unit) == (1.5, "ms")
        telemetry.reset()
        assert telemetry.metrics == []


class TestConsoleTelemetryProvider:
    def test_logs_spans_and_metrics(self, caplog: pytest.LogCaptureFixture) -> None:
        telemetry = ConsoleTelemetryProvider()
        with caplog.at_level(logging.INFO, logger="talkbridge.telemetry"):
            with telemetry.span(SpanKind.PLAYBACK_ENQUEUE, "enqueue"):
                pass
            telemetry.record_metric("talkbridge.x", 2, attributes={"k": "v"})

        assert "[SPAN START]" in caplog.text
        assert "[SPAN END]" in caplog.text
        assert "[METRIC] talkbridge.x = 2.00 [k=v]" in caplog.text

    def test_close_warns_about_open_spans(self, caplog: pytest.LogCaptureFixture) -> None:
        telemetry = ConsoleTelemetryProvider()
        telemetry.start_span(SpanKind.CUSTOM, "dangling")
        with caplog.at_level(logging.WARNING, logger="talkbridge.telemetry"):
            telemetry.close()
        assert "1 active spans" in caplog.text


class TestNoopTelemetryProvider:
    def test_span_context(self) -> None:
        telemetry = NoopTelemetryProvider()
        with telemetry.span(SpanKind.CUSTOM, "noop") as span_id:
            telemetry.set_attribute(span_id, "k", "v")
        assert telemetry.name == "noop"


class TestFallbackTracker:
    def test_counts_by_service_and_reason(self) -> None:
        telemetry = MockTelemetryProvider()
        tracker = FallbackTracker(telemetry)

        tracker.track("capture.constraints", "reduced")
        tracker.track("capture.constraints", "reduced")
        tracker.track("capture.low_latency", "unsupported")

        assert tracker.stats() == {
            "capture.constraints:reduced": 2,
            "capture.low_latency:unsupported": 1,
        }
        metrics = telemetry.get_metrics(Metric.CAPTURE_FALLBACK)
        assert len(metrics) == 3
        assert metrics[2].attributes == {
            Attr.SERVICE: "capture.low_latency",
            Attr.REASON: "unsupported",
        }

    def test_stats_is_a_copy(self) -> None:
        tracker = FallbackTracker(NoopTelemetryProvider())
        tracker.track("s", "r")
        tracker.stats()["s:r"] = 99
        assert tracker.stats() == {"s:r": 1}
        tracker.reset()
        assert tracker.stats() == {}
