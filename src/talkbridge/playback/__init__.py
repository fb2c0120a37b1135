"""Output timeline scheduling for model audio."""

from talkbridge.playback.scheduler import OutputTimeline, PlaybackScheduler, PlaybackSegment

__all__ = ["OutputTimeline", "PlaybackScheduler", "PlaybackSegment"]
