"""Gapless scheduling of decoded model audio on the output timeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from talkbridge.exceptions import PlaybackError

if TYPE_CHECKING:
    from talkbridge.audio.base import DecodedAudio
    from talkbridge.engine.base import BufferSource, GraphNode, OutputEngine

logger = logging.getLogger("talkbridge.playback")


@dataclass(eq=False)
class PlaybackSegment:
    buffer: DecodedAudio
    scheduled_start: float
    playback_rate: float
    source: BufferSource

    @property
    def duration(self) -> float:
        """Seconds on the output timeline."""
        return self.buffer.duration / self.playback_rate

    @property
    def scheduled_end(self) -> float:
        return self.scheduled_start + self.duration


@dataclass
class OutputTimeline:
    """Where the next segment starts, in output clock seconds."""

    next_start_time: float = 0.0

    def align(self, now: float) -> float:
        """Never schedule into the past."""
        self.next_start_time = max(self.next_start_time, now)
        return self.next_start_time

    def advance(self, seconds: float) -> None:
        self.next_start_time += seconds

    def reset(self) -> None:
        self.next_start_time = 0.0


class PlaybackScheduler:
    """Schedules segments back to back on one output engine.

    Segments never wait on each other: gaplessness comes from the timeline
    cursor alone. ``enqueue`` does not suspend, so calls from the event
    loop thread are serialised and the cursor has a single writer.

    Args:
        engine: Output engine providing the clock and buffer sources.
        output: Node every segment connects to (usually the output gain).
    """

    def __init__(self, engine: OutputEngine, output: GraphNode) -> None:
        self.engine = engine
        self.output = output
        self.timeline = OutputTimeline()
        self._segments: set[PlaybackSegment] = set()

    @property
    def live_segments(self) -> list[PlaybackSegment]:
        return sorted(self._segments, key=lambda s: s.scheduled_start)

    @property
    def next_start_time(self) -> float:
        return self.timeline.next_start_time

    def enqueue(self, decoded: DecodedAudio, playback_rate: float = 1.0) -> float:
        """Schedule ``decoded`` after everything already queued.

        Returns:
            The scheduled duration in milliseconds.

        Raises:
            PlaybackError: The engine refused the buffer.
        """
        rate = playback_rate if playback_rate > 0 else 1.0
        start = self.timeline.align(self.engine.current_time)

        try:
            source = self.engine.create_buffer_source(decoded)
        except Exception as exc:
            raise PlaybackError(f"could not create buffer source: {exc}") from exc
        try:
            source.playback_rate = rate
            source.connect(self.output)
        except Exception as exc:
            self._discard(source)
            raise PlaybackError(f"could not route buffer source: {exc}") from exc

        segment = PlaybackSegment(
            buffer=decoded, scheduled_start=start, playback_rate=rate, source=source
        )
        source.add_ended_listener(lambda: self._segments.discard(segment))
        self._segments.add(segment)

        try:
            source.start(start)
        except Exception as exc:
            self._segments.discard(segment)
            self._discard(source)
            raise PlaybackError(f"could not start buffer source: {exc}") from exc

        self.timeline.advance(segment.duration)
        logger.debug(
            "Scheduled %.1fms at t=%.3fs (rate=%.2f, live=%d)",
            segment.duration * 1000,
            start,
            rate,
            len(self._segments),
        )
        return segment.duration * 1000

    def _discard(self, source: BufferSource) -> None:
        # Stopped sources are dropped by the engine even if they never started
        try:
            source.stop()
        except Exception:
            logger.debug("Error stopping unscheduled buffer source", exc_info=True)
        source.disconnect()

    def stop_all(self) -> None:
        """Stop every live segment and rewind the cursor to 0."""
        segments = list(self._segments)
        for segment in segments:
            try:
                segment.source.stop()
            except Exception:
                logger.debug("Error stopping playback segment", exc_info=True)
            segment.source.disconnect()
        self._segments.clear()
        self.timeline.reset()
        if segments:
            logger.info("Playback stopped (%d segment(s) cancelled)", len(segments))
