"""Counting of capture fallbacks per service and reason."""

from __future__ import annotations

import logging
from collections import Counter

from talkbridge.telemetry.base import Attr, Metric, TelemetryProvider

logger = logging.getLogger("talkbridge.telemetry")


class FallbackTracker:
    """Counts every fallback as ``service:reason`` and mirrors it as a metric.

    Args:
        telemetry: Provider that receives the ``talkbridge.capture.fallback``
            metric.
    """

    def __init__(self, telemetry: TelemetryProvider) -> None:
        self.telemetry = telemetry
        self._counts: Counter[str] = Counter()

    def track(self, service: str, reason: str) -> None:
        key = f"{service}:{reason}"
        self._counts[key] += 1
        logger.info("Fallback %s (count=%d)", key, self._counts[key])
        self.telemetry.record_metric(
            Metric.CAPTURE_FALLBACK,
            1,
            attributes={Attr.SERVICE: service, Attr.REASON: reason},
        )

    def stats(self) -> dict[str, int]:
        return dict(self._counts)

    def reset(self) -> None:
        self._counts.clear()
