"""Ownership of the acquired capture stream."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from talkbridge.capture.constraints import ConstraintLadder, ConstraintStage, NegotiationResult
from talkbridge.engine.base import TrackState
from talkbridge.exceptions import AcquisitionError, ProcessingSetupError, RecordingCancelledError

if TYPE_CHECKING:
    from talkbridge.engine.base import (
        CaptureEngine,
        DeviceStream,
        DeviceTrack,
        GraphNode,
        SourceNode,
    )

logger = logging.getLogger("talkbridge.capture")


class CaptureSession:
    """The live capture stream of one controller.

    Holds the device stream, its track, the ladder stage that was applied
    and the graph source node. Downstream nodes are attached through
    :meth:`connect_source` so that :meth:`reacquire` can rewire them onto a
    fresh source.

    Args:
        engine: Capture engine that opens devices and builds nodes.
        ladder: Constraint ladder used by :meth:`acquire` and :meth:`reacquire`.
    """

    def __init__(self, engine: CaptureEngine, ladder: ConstraintLadder | None = None) -> None:
        self.engine = engine
        self.ladder = ladder or ConstraintLadder()
        self.stream: DeviceStream | None = None
        self.applied_stage: ConstraintStage | None = None
        self.source_node: SourceNode | None = None
        self.negotiation: NegotiationResult | None = None
        self._targets: list[GraphNode] = []
        self._released = False

    @property
    def track(self) -> DeviceTrack | None:
        return self.stream.track if self.stream is not None else None

    @property
    def released(self) -> bool:
        return self._released

    @property
    def fallback_applied(self) -> bool:
        return self.negotiation is not None and self.negotiation.fallback_applied

    async def acquire(self) -> CaptureSession:
        """Run the ladder and build the source node.

        Raises:
            AcquisitionError: Fatal refusal, or the last error once every
                stage was refused.
        """
        result = await self.ladder.negotiate(self.engine.acquire)
        if self._released:
            # Released while negotiating: the stream has no owner
            result.stream.stop()
            raise RecordingCancelledError("capture session released during negotiation")
        self._adopt(result)
        logger.info("Capture acquired at stage %s", result.stage.name)
        return self

    def is_live(self) -> bool:
        """Query the device track itself; tracks can end at any moment."""
        track = self.track
        return track is not None and track.ready_state is TrackState.LIVE

    async def ensure_live(self) -> None:
        if not self.is_live():
            logger.warning("Capture track is no longer live; re-acquiring")
            await self.reacquire()

    async def reacquire(self) -> CaptureSession:
        """Negotiate a new stream, then retire the old one.

        The old track is stopped only once the new one is confirmed live.
        Nodes attached through :meth:`connect_source` are moved to the new
        source node.
        """
        result = await self.ladder.negotiate(self.engine.acquire)
        new_track = result.stream.track
        if self._released:
            result.stream.stop()
            raise RecordingCancelledError("capture session released during re-acquisition")
        if new_track.ready_state is not TrackState.LIVE:
            result.stream.stop()
            raise AcquisitionError("re-acquired capture track is not live")

        old_stream, old_source = self.stream, self.source_node
        self._adopt(result)
        if old_source is not None:
            old_source.close()
        if old_stream is not None:
            old_stream.stop()

        assert self.source_node is not None
        for target in self._targets:
            self.source_node.connect(target)
        logger.info(
            "Capture re-acquired at stage %s (%d node(s) rewired)",
            result.stage.name,
            len(self._targets),
        )
        return self

    def connect_source(self, target: GraphNode) -> GraphNode:
        if self.source_node is None:
            raise ProcessingSetupError("capture session has no source node")
        self.source_node.connect(target)
        if target not in self._targets:
            self._targets.append(target)
        return target

    def disconnect_source(self, target: GraphNode) -> None:
        if target in self._targets:
            self._targets.remove(target)
        if self.source_node is not None:
            self.source_node.disconnect(target)

    def release(self) -> None:
        """Stop the track, detach the source and drop every handle. Idempotent."""
        self._released = True
        source, stream = self.source_node, self.stream
        self.source_node = None
        self.stream = None
        self.applied_stage = None
        self._targets.clear()
        if source is not None:
            source.close()
        if stream is not None:
            stream.stop()
            logger.debug("Capture session released")

    def _adopt(self, result: NegotiationResult) -> None:
        self.negotiation = result
        self.stream = result.stream
        self.applied_stage = result.stage
        self.source_node = self.engine.create_source(result.stream)
