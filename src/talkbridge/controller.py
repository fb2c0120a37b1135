"""AudioController: the single owner of capture and playback resources."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable
from typing import Any

import numpy as np

from talkbridge.audio.base import (
    ChunkCallback,
    ErrorCallback,
    RecordingMetrics,
    RecordingPlatform,
    RecordingStartResult,
    RecordingStopResult,
    StartCallback,
    StopCallback,
)
from talkbridge.audio.decode import AudioDecoder, Pcm16Decoder
from talkbridge.audio.encoder import build_chunk, float_to_int16, int16_from_bytes
from talkbridge.capture.constraints import CONSTRAINT_STAGES, ConstraintLadder, ConstraintStage
from talkbridge.capture.paths import ModuleRegistry, PathSelection, ProcessingPathSelector
from talkbridge.capture.session import CaptureSession
from talkbridge.config import AudioControllerConfig
from talkbridge.engine.base import CaptureEngine, EngineState, GraphNode, OutputEngine
from talkbridge.exceptions import ContextNotInitializedError, RecordingCancelledError
from talkbridge.playback.scheduler import PlaybackScheduler
from talkbridge.telemetry.base import Attr, Metric, SpanKind, TelemetryProvider
from talkbridge.telemetry.fallback import FallbackTracker
from talkbridge.telemetry.noop import NoopTelemetryProvider

logger = logging.getLogger("talkbridge.controller")

CaptureEngineFactory = Callable[[AudioControllerConfig], CaptureEngine]
OutputEngineFactory = Callable[[AudioControllerConfig], OutputEngine]


def _local_capture_engine(config: AudioControllerConfig) -> CaptureEngine:
    from talkbridge.engine.local import LocalCaptureEngine

    return LocalCaptureEngine(sample_rate=config.input_sample_rate, device=config.input_device)


def _local_output_engine(config: AudioControllerConfig) -> OutputEngine:
    from talkbridge.engine.local import LocalOutputEngine

    return LocalOutputEngine(
        sample_rate=config.output_sample_rate,
        channels=config.output_channels,
        device=config.output_device,
        latency=config.output_latency,
    )


def detect_platform() -> RecordingPlatform:
    if sys.platform in ("ios", "android") or hasattr(sys, "getandroidapilevel"):
        return RecordingPlatform.MOBILE
    if sys.platform.startswith(("linux", "darwin", "win32", "cygwin", "freebsd")):
        return RecordingPlatform.DESKTOP
    return RecordingPlatform.UNKNOWN


class AudioController:
    """Bidirectional audio between the local devices and a realtime session.

    Captured audio is negotiated through the constraint ladder, processed
    by exactly one processing path and delivered as :class:`ChunkPayload`
    objects to ``on_chunk``. Model audio handed to
    :meth:`queue_model_audio` is decoded and scheduled gaplessly.

    Example::

        controller = AudioController()
        controller.initialize_contexts()
        result = await controller.start_recording(session.send_audio)
        ...
        await controller.queue_model_audio(base64_pcm, playback_rate=1.0)
        controller.stop_recording()
        await controller.close()

    Args:
        config: Controller configuration.
        capture_engine_factory: Builds the capture engine. Defaults to the
            PortAudio engine.
        output_engine_factory: Builds the output engine. Defaults to the
            PortAudio engine.
        decoder: Async decode collaborator for model audio.
        telemetry: Receives spans and metrics.
        module_registry: Install-once record for processing modules.
            Defaults to the process-wide registry.
        stages: Constraint ladder stages, most specific first.
    """

    def __init__(
        self,
        config: AudioControllerConfig | None = None,
        *,
        capture_engine_factory: CaptureEngineFactory | None = None,
        output_engine_factory: OutputEngineFactory | None = None,
        decoder: AudioDecoder | None = None,
        telemetry: TelemetryProvider | None = None,
        module_registry: ModuleRegistry | None = None,
        stages: tuple[ConstraintStage, ...] = CONSTRAINT_STAGES,
    ) -> None:
        self.config = config or AudioControllerConfig()
        self._capture_engine_factory = capture_engine_factory or _local_capture_engine
        self._output_engine_factory = output_engine_factory or _local_output_engine
        self._decoder: AudioDecoder = decoder or Pcm16Decoder()
        self._telemetry = telemetry or NoopTelemetryProvider()
        self._module_registry = module_registry
        self._stages = stages
        self._fallbacks = FallbackTracker(self._telemetry)

        self._capture_engine: CaptureEngine | None = None
        self._output_engine: OutputEngine | None = None
        self._output_gain: GraphNode | None = None
        self._scheduler: PlaybackScheduler | None = None

        self._session: CaptureSession | None = None
        self._selection: PathSelection | None = None
        self._metrics: RecordingMetrics | None = None
        self._on_stop: StopCallback | None = None
        self._fallback_reason: str | None = None
        self._reacquire_task: asyncio.Task[None] | None = None
        # Bumped by cleanup(); a start_recording() that sees a different
        # value after a suspension point has been cancelled.
        self._generation = 0

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def is_recording(self) -> bool:
        return self._metrics is not None

    @property
    def capture_engine(self) -> CaptureEngine | None:
        return self._capture_engine

    @property
    def output_engine(self) -> OutputEngine | None:
        return self._output_engine

    @property
    def scheduler(self) -> PlaybackScheduler | None:
        return self._scheduler

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    @property
    def selection(self) -> PathSelection | None:
        return self._selection

    @property
    def last_fallback_reason(self) -> str | None:
        """Why the low-latency path is not (or no longer) in use."""
        return self._fallback_reason

    def get_fallback_stats(self) -> dict[str, int]:
        return self._fallbacks.stats()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize_contexts(self) -> None:
        """Create the capture and output engines if they do not exist yet."""
        if self._capture_engine is None:
            self._capture_engine = self._capture_engine_factory(self.config)
            logger.debug("Capture engine created: %s", type(self._capture_engine).__name__)
        if self._output_engine is None:
            engine = self._output_engine_factory(self.config)
            gain = engine.create_gain(1.0)
            gain.connect(engine.destination)
            self._output_engine = engine
            self._output_gain = gain
            self._scheduler = PlaybackScheduler(engine, gain)
            logger.debug("Output engine created: %s", type(engine).__name__)

    async def start_recording(
        self,
        on_chunk: ChunkCallback,
        *,
        on_start: StartCallback | None = None,
        on_stop: StopCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> RecordingStartResult:
        """Acquire the microphone and start emitting chunks to ``on_chunk``.

        Raises:
            ContextNotInitializedError: :meth:`initialize_contexts` was not called.
            AcquisitionError: The ladder aborted or every stage was refused.
            ProcessingSetupError: Neither processing path could be wired.
            RecordingCancelledError: :meth:`stop_recording` or :meth:`cleanup`
                ran while this call was suspended. ``on_error`` is not called.
        """
        if self._session is not None or self._metrics is not None:
            logger.warning("start_recording called while recording; restarting capture")
            self.cleanup()

        self._generation += 1
        generation = self._generation

        def checkpoint() -> None:
            if generation != self._generation:
                raise RecordingCancelledError("recording was stopped while starting")

        session: CaptureSession | None = None
        selection: PathSelection | None = None
        try:
            with self._telemetry.span(SpanKind.CAPTURE_START, "capture.start") as span_id:
                engine = self._capture_engine
                if engine is None:
                    raise ContextNotInitializedError(
                        "Audio contexts are not initialized; call initialize_contexts() first"
                    )
                if engine.state is EngineState.SUSPENDED:
                    await engine.resume()
                    checkpoint()

                session = CaptureSession(engine, ConstraintLadder(self._stages))
                self._session = session
                with self._telemetry.span(SpanKind.CAPTURE_NEGOTIATE, "capture.negotiate"):
                    await session.acquire()
                checkpoint()

                assert session.applied_stage is not None
                stage_name = session.applied_stage.name
                if session.fallback_applied:
                    self._fallbacks.track("capture.constraints", str(stage_name))

                metrics = RecordingMetrics()
                self._metrics = metrics
                self._on_stop = on_stop
                if on_start is not None:
                    on_start(metrics.started_at)

                track = session.track
                assert track is not None
                track.on_ended(lambda: logger.warning("Microphone track ended"))
                track.on_muted(lambda muted: logger.warning("Microphone track muted=%s", muted))

                selector = ProcessingPathSelector(
                    engine,
                    on_message=self._message_handler(generation, on_chunk),
                    on_buffer=self._buffer_handler(generation, on_chunk),
                    registry=self._module_registry,
                    low_latency_enabled=self.config.low_latency_enabled,
                    buffer_size=self.config.periodic_buffer_size,
                    checkpoint=checkpoint,
                )
                selection = await selector.select(session)
                checkpoint()
                self._selection = selection

                if selection.fallback_reason is not None:
                    self._fallback_reason = selection.fallback_reason
                    self._fallbacks.track("capture.low_latency", selection.fallback_reason)

                result = self._start_result(session, selection)
                for key, value in (
                    (Attr.CONSTRAINT_STAGE, result.constraint_stage),
                    (Attr.FALLBACK_APPLIED, result.fallback_applied),
                    (Attr.LOW_LATENCY_USED, result.low_latency_used),
                    (Attr.PLATFORM, str(result.platform)),
                ):
                    self._telemetry.set_attribute(span_id, key, value)
        except RecordingCancelledError:
            # Whoever cancelled already cleaned up the controller; only this
            # attempt's own handles may still be dangling.
            if selection is not None and selection is not self._selection:
                selection.path.teardown(session)
            if session is not None and session is not self._session:
                session.release()
            logger.info("Recording start cancelled")
            raise
        except Exception as exc:
            if generation == self._generation:
                self.cleanup()
            elif session is not None:
                session.release()
            logger.error("Could not start recording: %s", exc)
            if on_error is not None:
                try:
                    on_error(exc)
                except Exception:
                    logger.exception("on_error callback failed")
            raise

        logger.info(
            "Recording started: stage=%s low_latency=%s",
            result.constraint_stage,
            result.low_latency_used,
        )
        return result

    def stop_recording(self) -> RecordingStopResult | None:
        """Finish the current recording. Returns None when nothing was recording."""
        metrics, on_stop = self._metrics, self._on_stop
        self._metrics = None
        self._on_stop = None

        result: RecordingStopResult | None = None
        if metrics is not None:
            result = metrics.finalize()
            if on_stop is not None:
                try:
                    on_stop(result.segment_ms, result.stopped_at)
                except Exception:
                    logger.exception("on_stop callback failed")
            logger.info("Recording stopped after %.0fms", result.segment_ms)
        self.cleanup()
        return result

    def cleanup(self) -> None:
        """Release every capture-side resource. Idempotent.

        Any ``start_recording`` still in flight is cancelled.
        """
        self._generation += 1
        selection, session = self._selection, self._session
        self._selection = None
        self._session = None
        if selection is not None:
            selection.path.teardown(session)
        if session is not None:
            session.release()
        self._metrics = None
        self._on_stop = None
        self._fallback_reason = None

    async def queue_model_audio(self, payload: str | bytes, playback_rate: float = 1.0) -> float:
        """Decode ``payload`` and schedule it after everything already queued.

        Returns:
            Milliseconds of audio scheduled; 0 when no output pipeline exists
            or the payload could not be decoded or scheduled.
        """
        engine, scheduler = self._output_engine, self._scheduler
        if engine is None or scheduler is None:
            return 0.0

        try:
            with self._telemetry.span(
                SpanKind.PLAYBACK_ENQUEUE,
                "playback.enqueue",
                attributes={Attr.PLAYBACK_RATE: playback_rate},
            ) as span_id:
                if engine.state is EngineState.SUSPENDED:
                    await engine.resume()
                decoded = await self._decoder(payload)
                self._revalidate_capture()
                if self._scheduler is not scheduler:
                    logger.debug("Output closed while decoding; dropping model audio")
                    return 0.0
                # No suspension between here and the cursor update
                duration_ms = scheduler.enqueue(decoded, playback_rate)
                self._telemetry.set_attribute(span_id, Attr.DURATION_MS, duration_ms)
        except Exception as exc:
            logger.error("Could not queue model audio: %s", exc)
            return 0.0

        self._telemetry.record_metric(Metric.PLAYBACK_SCHEDULED_MS, duration_ms, unit="ms")
        return duration_ms

    def _revalidate_capture(self) -> None:
        """Re-acquire in the background if capture died while decoding.

        Playback is never delayed by it, and at most one re-acquisition runs
        at a time.
        """
        session = self._session
        if session is None or self._selection is None:
            return
        if session.released or session.is_live():
            return
        if self._reacquire_task is not None and not self._reacquire_task.done():
            return
        logger.warning("Capture track ended while decoding model audio; re-acquiring")
        self._reacquire_task = asyncio.create_task(
            self._reacquire_capture(session, self._generation)
        )

    async def _reacquire_capture(self, session: CaptureSession, generation: int) -> None:
        try:
            await session.ensure_live()
        except RecordingCancelledError:
            logger.debug("Capture re-acquisition cancelled by stop")
        except Exception as exc:
            if generation == self._generation:
                logger.error("Could not re-acquire capture: %s", exc)

    def stop_playback(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop_all()

    async def close(self) -> None:
        """Clean up and shut down both engines."""
        self.stop_recording()
        self.stop_playback()
        capture, output = self._capture_engine, self._output_engine
        self._capture_engine = None
        self._output_engine = None
        self._output_gain = None
        self._scheduler = None
        task, self._reacquire_task = self._reacquire_task, None
        if task is not None and not task.done():
            task.cancel()
        if capture is not None:
            await capture.close()
        if output is not None:
            await output.close()
        self._telemetry.close()

    # -------------------------------------------------------------------------
    # Chunk emission
    # -------------------------------------------------------------------------

    def _message_handler(self, generation: int, on_chunk: ChunkCallback) -> Callable[[Any], None]:
        def handle(message: Any) -> None:
            if generation != self._generation or not message:
                return
            if isinstance(message, bytes | bytearray | memoryview):
                self._emit(int16_from_bytes(bytes(message)), on_chunk)
                return
            if not isinstance(message, dict):
                return
            kind = message.get("type")
            if kind == "chunk" and message.get("buffer"):
                self._emit(int16_from_bytes(bytes(message["buffer"])), on_chunk)
            elif kind == "error" and message.get("message"):
                reason = str(message["message"])
                logger.error("Low-latency processing error: %s", reason)
                self._fallback_reason = reason
                self._fallbacks.track("capture.low_latency", reason)

        return handle

    def _buffer_handler(
        self, generation: int, on_chunk: ChunkCallback
    ) -> Callable[[np.ndarray], None]:
        def handle(samples: np.ndarray) -> None:
            if generation != self._generation:
                return
            try:
                pcm = float_to_int16(samples)
            except Exception as exc:
                self._drop_chunk(exc)
                return
            self._emit(pcm, on_chunk)

        return handle

    def _emit(self, pcm: np.ndarray, on_chunk: ChunkCallback) -> None:
        if len(pcm) == 0:
            return
        try:
            chunk = build_chunk(pcm, threshold=self.config.vad_threshold)
            payload = chunk.to_payload(binary=self.config.chunk_encoding == "binary")
            on_chunk(payload)
        except Exception as exc:
            self._drop_chunk(exc)

    def _drop_chunk(self, exc: Exception) -> None:
        logger.warning("Dropping audio chunk: %s", exc)
        self._telemetry.record_metric(Metric.CHUNK_DROPPED, 1)

    def _start_result(
        self, session: CaptureSession, selection: PathSelection
    ) -> RecordingStartResult:
        stage = session.applied_stage
        assert stage is not None
        track = session.track
        return RecordingStartResult(
            platform=detect_platform(),
            constraint_stage=str(stage.name),
            fallback_applied=session.fallback_applied,
            low_latency_used=selection.low_latency_used,
            low_latency_fallback_reason=None
            if selection.low_latency_used
            else selection.fallback_reason,
            requested_config=self._stages[0].request.to_dict(),
            applied_config=stage.request.to_dict(),
            track_settings=track.settings() if track is not None else None,
            track_capabilities=track.capabilities() if track is not None else None,
        )
