"""Tests for AudioController orchestration."""

from __future__ import annotations

import asyncio
import base64
from typing import Any

import numpy as np
import pytest

from talkbridge.audio.base import ChunkPayload, RecordingPlatform
from talkbridge.capture.paths import LowLatencyPath, PeriodicCallbackPath
from talkbridge.config import AudioControllerConfig
from talkbridge.controller import AudioController
from talkbridge.engine.base import EngineState
from talkbridge.engine.mock import MockCaptureEngine, MockOutputEngine
from talkbridge.exceptions import (
    ConstraintNotSatisfiableError,
    ContextNotInitializedError,
    PermissionDeniedError,
    ProcessingSetupError,
    RecordingCancelledError,
)
from talkbridge.telemetry import Attr, Metric, MockTelemetryProvider, SpanKind


def _controller(
    capture: MockCaptureEngine | None = None,
    output: MockOutputEngine | None = None,
    *,
    config: AudioControllerConfig | None = None,
    telemetry: MockTelemetryProvider | None = None,
) -> AudioController:
    capture = capture or MockCaptureEngine()
    output = output or MockOutputEngine()
    return AudioController(
        config,
        capture_engine_factory=lambda cfg: capture,
        output_engine_factory=lambda cfg: output,
        telemetry=telemetry,
    )


def _pcm16_base64(frames: int) -> str:
    return base64.b64encode(np.zeros(frames, dtype="<i2").tobytes()).decode()


class _Recorder:
    """Collects controller callbacks."""

    def __init__(self) -> None:
        self.chunks: list[ChunkPayload] = []
        self.started: list[float] = []
        self.stopped: list[tuple[float, float]] = []
        self.errors: list[BaseException] = []

    def on_chunk(self, payload: ChunkPayload) -> None:
        self.chunks.append(payload)

    def kwargs(self) -> dict[str, Any]:
        return {
            "on_start": self.started.append,
            "on_stop": lambda segment_ms, stopped_at: self.stopped.append(
                (segment_ms, stopped_at)
            ),
            "on_error": self.errors.append,
        }

    async def start(self, controller: AudioController) -> Any:
        return await controller.start_recording(self.on_chunk, **self.kwargs())


# ---------------------------------------------------------------------------
# Contexts
# ---------------------------------------------------------------------------


class TestContexts:
    async def test_start_without_contexts(self) -> None:
        controller = _controller()
        recorder = _Recorder()

        with pytest.raises(ContextNotInitializedError):
            await recorder.start(controller)

        assert len(recorder.errors) == 1
        assert isinstance(recorder.errors[0], ContextNotInitializedError)
        assert recorder.started == []

    def test_initialize_is_idempotent(self) -> None:
        built: list[str] = []
        capture, output = MockCaptureEngine(), MockOutputEngine()

        def capture_factory(config: AudioControllerConfig) -> MockCaptureEngine:
            built.append("capture")
            return capture

        def output_factory(config: AudioControllerConfig) -> MockOutputEngine:
            built.append("output")
            return output

        controller = AudioController(
            capture_engine_factory=capture_factory, output_engine_factory=output_factory
        )
        controller.initialize_contexts()
        controller.initialize_contexts()

        assert built == ["capture", "output"]
        assert controller.capture_engine is capture
        assert controller.scheduler is not None
        assert controller.scheduler.output.reaches(output.destination)

    async def test_close_shuts_engines(self) -> None:
        capture, output = MockCaptureEngine(), MockOutputEngine()
        controller = _controller(capture, output)
        controller.initialize_contexts()
        await controller.start_recording(lambda payload: None)

        await controller.close()

        assert capture.state is EngineState.CLOSED
        assert output.state is EngineState.CLOSED
        assert capture.tracks[0].stopped is True
        assert controller.capture_engine is None
        assert await controller.queue_model_audio(_pcm16_base64(2400)) == 0.0


# ---------------------------------------------------------------------------
# start_recording
# ---------------------------------------------------------------------------


class TestStartRecording:
    async def test_first_stage_low_latency(self, capture_engine: MockCaptureEngine) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        recorder = _Recorder()

        result = await recorder.start(controller)

        assert result.constraint_stage == "enhanced"
        assert result.fallback_applied is False
        assert result.low_latency_used is True
        assert result.low_latency_fallback_reason is None
        assert result.requested_config == result.applied_config
        assert result.requested_config["sample_rate"] == 16000
        assert result.platform in set(RecordingPlatform)
        assert result.track_settings is not None
        assert controller.is_recording
        assert capture_engine.state is EngineState.RUNNING
        assert len(recorder.started) == 1
        assert controller.selection is not None
        assert isinstance(controller.selection.path, LowLatencyPath)

    async def test_reduced_stage(self) -> None:
        engine = MockCaptureEngine(acquire_outcomes=[ConstraintNotSatisfiableError("no 16k")])
        controller = _controller(engine)
        controller.initialize_contexts()

        result = await controller.start_recording(lambda payload: None)

        assert result.constraint_stage == "reduced"
        assert result.fallback_applied is True
        assert "sample_rate" not in result.applied_config
        assert result.requested_config["sample_rate"] == 16000
        assert controller.get_fallback_stats() == {"capture.constraints:reduced": 1}

    async def test_permission_denied_aborts(self) -> None:
        engine = MockCaptureEngine(acquire_outcomes=[PermissionDeniedError()])
        controller = _controller(engine)
        controller.initialize_contexts()
        recorder = _Recorder()

        with pytest.raises(PermissionDeniedError):
            await recorder.start(controller)

        assert len(engine.acquired_configs) == 1
        assert recorder.errors and isinstance(recorder.errors[0], PermissionDeniedError)
        assert recorder.started == []
        assert not controller.is_recording
        assert controller.session is None

    async def test_total_processing_failure(self) -> None:
        engine = MockCaptureEngine(
            low_latency_error=RuntimeError("no worklet"),
            periodic_error=RuntimeError("no processor"),
        )
        controller = _controller(engine)
        controller.initialize_contexts()
        recorder = _Recorder()

        with pytest.raises(ProcessingSetupError):
            await recorder.start(controller)

        assert len(recorder.errors) == 1
        assert engine.tracks[0].stopped is True
        assert not controller.is_recording
        assert controller.session is None

    async def test_restart_releases_previous_capture(
        self, capture_engine: MockCaptureEngine
    ) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()

        await controller.start_recording(lambda payload: None)
        await controller.start_recording(lambda payload: None)

        assert capture_engine.tracks[0].stopped is True
        assert capture_engine.tracks[1].stopped is False
        assert capture_engine.low_latency_nodes[0].closed is True
        assert capture_engine.installed == ["pcm-encoder"]


# ---------------------------------------------------------------------------
# Chunk emission
# ---------------------------------------------------------------------------


class TestChunks:
    async def test_low_latency_chunk(self, capture_engine: MockCaptureEngine) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        recorder = _Recorder()
        await recorder.start(controller)

        capture_engine.low_latency_nodes[0].post_chunk(np.full(2048, 500, dtype=np.int16))

        [chunk] = recorder.chunks
        assert chunk.mime_type == "audio/pcm;rate=16000"
        assert chunk.duration_ms == pytest.approx(128.0)
        assert chunk.rms == pytest.approx(500.0)
        assert chunk.is_speaking is True
        assert isinstance(chunk.data, str)
        assert len(base64.b64decode(chunk.data)) == 4096

    async def test_raw_bytes_message(self, capture_engine: MockCaptureEngine) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        recorder = _Recorder()
        await recorder.start(controller)

        capture_engine.low_latency_nodes[0].post(np.zeros(160, dtype="<i2").tobytes())

        [chunk] = recorder.chunks
        assert chunk.is_speaking is False
        assert chunk.duration_ms == pytest.approx(10.0)

    async def test_binary_encoding(self, capture_engine: MockCaptureEngine) -> None:
        controller = _controller(
            capture_engine, config=AudioControllerConfig(chunk_encoding="binary")
        )
        controller.initialize_contexts()
        recorder = _Recorder()
        await recorder.start(controller)

        capture_engine.low_latency_nodes[0].post_chunk(np.array([1, -1], dtype=np.int16))

        assert recorder.chunks[0].data == b"\x01\x00\xff\xff"

    async def test_periodic_fallback_chunk(self) -> None:
        engine = MockCaptureEngine(low_latency=False)
        controller = _controller(engine)
        controller.initialize_contexts()
        recorder = _Recorder()

        result = await recorder.start(controller)
        engine.periodic_nodes[0].feed(np.full(4096, 0.5, dtype=np.float32))

        assert result.low_latency_used is False
        assert result.low_latency_fallback_reason == "unsupported"
        assert controller.selection is not None
        assert isinstance(controller.selection.path, PeriodicCallbackPath)
        [chunk] = recorder.chunks
        assert chunk.rms == pytest.approx(16383.0)
        assert chunk.duration_ms == pytest.approx(256.0)
        assert chunk.is_speaking is True
        assert controller.get_fallback_stats() == {"capture.low_latency:unsupported": 1}

    async def test_install_failure_reports_reason(self) -> None:
        engine = MockCaptureEngine(install_error=RuntimeError("module fetch failed"))
        controller = _controller(engine)
        controller.initialize_contexts()

        result = await controller.start_recording(lambda payload: None)

        assert result.low_latency_used is False
        assert result.low_latency_fallback_reason == "module fetch failed"
        assert controller.last_fallback_reason == "module fetch failed"

    async def test_processing_error_message(self, capture_engine: MockCaptureEngine) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        recorder = _Recorder()
        await recorder.start(controller)

        capture_engine.low_latency_nodes[0].post({"type": "error", "message": "boom"})

        assert recorder.chunks == []
        assert controller.last_fallback_reason == "boom"
        assert controller.get_fallback_stats() == {"capture.low_latency:boom": 1}

    async def test_ignores_malformed_messages(self, capture_engine: MockCaptureEngine) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        recorder = _Recorder()
        await recorder.start(controller)
        node = capture_engine.low_latency_nodes[0]

        node.post({"type": "chunk"})
        node.post({"type": "unknown", "buffer": b"\x00\x00"})
        node.post({})

        assert recorder.chunks == []

    async def test_failing_consumer_drops_chunk(self, capture_engine: MockCaptureEngine) -> None:
        telemetry = MockTelemetryProvider()
        controller = _controller(capture_engine, telemetry=telemetry)
        controller.initialize_contexts()

        def on_chunk(payload: ChunkPayload) -> None:
            raise ConnectionError("socket closed")

        await controller.start_recording(on_chunk)
        node = capture_engine.low_latency_nodes[0]
        node.post_chunk(np.zeros(160, dtype=np.int16))
        node.post_chunk(np.zeros(160, dtype=np.int16))

        assert len(telemetry.get_metrics(Metric.CHUNK_DROPPED)) == 2
        assert controller.is_recording


# ---------------------------------------------------------------------------
# stop_recording / cancellation
# ---------------------------------------------------------------------------


class TestStopRecording:
    async def test_stop_reports_segment(self, capture_engine: MockCaptureEngine) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        recorder = _Recorder()
        await recorder.start(controller)

        result = controller.stop_recording()

        assert result is not None
        assert result.segment_ms >= 0
        assert recorder.stopped == [(result.segment_ms, result.stopped_at)]
        assert capture_engine.tracks[0].stopped is True
        assert capture_engine.low_latency_nodes[0].closed is True
        assert not controller.is_recording

    async def test_second_stop_is_noop(self, capture_engine: MockCaptureEngine) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        recorder = _Recorder()
        await recorder.start(controller)

        controller.stop_recording()

        assert controller.stop_recording() is None
        assert len(recorder.stopped) == 1

    async def test_stale_messages_are_ignored(self, capture_engine: MockCaptureEngine) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        recorder = _Recorder()
        await recorder.start(controller)
        node = capture_engine.low_latency_nodes[0]

        controller.stop_recording()
        node.post_chunk(np.full(160, 1000, dtype=np.int16))

        assert recorder.chunks == []

    async def test_cancel_during_negotiation(self, capture_engine: MockCaptureEngine) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        recorder = _Recorder()

        task = asyncio.create_task(recorder.start(controller))
        await asyncio.sleep(0)
        assert controller.stop_recording() is None

        with pytest.raises(RecordingCancelledError):
            await task

        assert recorder.errors == []
        assert recorder.started == []
        assert capture_engine.tracks[0].stopped is True
        assert controller.session is None
        assert not controller.is_recording

    async def test_cancel_during_module_install(self) -> None:
        engine = MockCaptureEngine()
        controller = _controller(engine)
        controller.initialize_contexts()
        recorder = _Recorder()
        engine.on_install = controller.stop_recording

        with pytest.raises(RecordingCancelledError):
            await recorder.start(controller)

        assert recorder.errors == []
        assert len(recorder.started) == 1
        assert len(recorder.stopped) == 1
        assert engine.tracks[0].stopped is True
        assert engine.low_latency_nodes == []
        assert engine.periodic_nodes == []
        assert controller.selection is None

    async def test_start_after_cancel(self) -> None:
        engine = MockCaptureEngine()
        controller = _controller(engine)
        controller.initialize_contexts()
        engine.on_install = controller.stop_recording

        with pytest.raises(RecordingCancelledError):
            await controller.start_recording(lambda payload: None)
        engine.on_install = None

        result = await controller.start_recording(lambda payload: None)

        assert result.low_latency_used is True
        assert controller.is_recording


# ---------------------------------------------------------------------------
# Playback
# ---------------------------------------------------------------------------


class TestPlayback:
    async def test_without_contexts(self) -> None:
        controller = _controller()
        assert await controller.queue_model_audio(_pcm16_base64(24000)) == 0.0

    async def test_gapless_queue(self, output_engine: MockOutputEngine) -> None:
        controller = _controller(output=output_engine)
        controller.initialize_contexts()

        first = await controller.queue_model_audio(_pcm16_base64(24000))
        second = await controller.queue_model_audio(_pcm16_base64(12000))

        assert first == pytest.approx(1000.0)
        assert second == pytest.approx(500.0)
        assert [s.start_time for s in output_engine.sources] == [0.0, 1.0]
        assert output_engine.state is EngineState.RUNNING

    async def test_playback_rate(self, output_engine: MockOutputEngine) -> None:
        controller = _controller(output=output_engine)
        controller.initialize_contexts()
        assert await controller.queue_model_audio(
            _pcm16_base64(24000), playback_rate=2.0
        ) == pytest.approx(500.0)

    async def test_invalid_payload(self, output_engine: MockOutputEngine) -> None:
        controller = _controller(output=output_engine)
        controller.initialize_contexts()
        assert await controller.queue_model_audio("%%% not audio %%%") == 0.0
        assert output_engine.sources == []

    async def test_stop_playback(self, output_engine: MockOutputEngine) -> None:
        controller = _controller(output=output_engine)
        controller.initialize_contexts()
        await controller.queue_model_audio(_pcm16_base64(24000))

        controller.stop_playback()
        output_engine.advance(0.2)
        await controller.queue_model_audio(_pcm16_base64(2400))

        assert output_engine.sources[0].stopped is True
        assert output_engine.sources[1].start_time == pytest.approx(0.2)

    async def test_concurrent_enqueues_stay_gapless(
        self, output_engine: MockOutputEngine
    ) -> None:
        async def slow_decoder(payload: str | bytes) -> Any:
            from talkbridge.audio.decode import Pcm16Decoder

            await asyncio.sleep(0)
            return await Pcm16Decoder()(payload)

        controller = AudioController(
            capture_engine_factory=lambda cfg: MockCaptureEngine(),
            output_engine_factory=lambda cfg: output_engine,
            decoder=slow_decoder,
        )
        controller.initialize_contexts()

        await asyncio.gather(
            *(controller.queue_model_audio(_pcm16_base64(6000)) for _ in range(4))
        )

        assert sorted(s.start_time for s in output_engine.sources) == [0.0, 0.25, 0.5, 0.75]


# ---------------------------------------------------------------------------
# Capture liveness after decode
# ---------------------------------------------------------------------------


class TestCaptureRevalidation:
    async def test_dead_track_is_reacquired(
        self, capture_engine: MockCaptureEngine, advance: Any
    ) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        await controller.start_recording(lambda payload: None)
        capture_engine.tracks[0].end()

        assert await controller.queue_model_audio(_pcm16_base64(2400)) == pytest.approx(100.0)
        await advance(10)

        assert len(capture_engine.tracks) == 2
        assert capture_engine.tracks[0].stopped is True
        assert controller.session is not None
        assert controller.session.is_live()
        assert controller.selection is not None
        assert capture_engine.sources[1].outputs == [controller.selection.path.processing_node]

    async def test_live_track_is_left_alone(
        self, capture_engine: MockCaptureEngine, advance: Any
    ) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        await controller.start_recording(lambda payload: None)

        await controller.queue_model_audio(_pcm16_base64(2400))
        await advance()

        assert len(capture_engine.tracks) == 1

    async def test_failed_reacquire_does_not_block_playback(
        self, capture_engine: MockCaptureEngine, advance: Any
    ) -> None:
        controller = _controller(capture_engine)
        controller.initialize_contexts()
        await controller.start_recording(lambda payload: None)
        capture_engine.tracks[0].end()
        capture_engine.acquire_outcomes = [PermissionDeniedError()]

        assert await controller.queue_model_audio(_pcm16_base64(2400)) == pytest.approx(100.0)
        await advance(10)

        assert len(capture_engine.tracks) == 1
        assert controller.is_recording

    async def test_playback_without_recording(self, advance: Any) -> None:
        capture = MockCaptureEngine()
        controller = _controller(capture)
        controller.initialize_contexts()

        await controller.queue_model_audio(_pcm16_base64(2400))
        await advance()

        assert capture.calls == []


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class TestTelemetry:
    async def test_start_spans(self, capture_engine: MockCaptureEngine) -> None:
        telemetry = MockTelemetryProvider()
        controller = _controller(capture_engine, telemetry=telemetry)
        controller.initialize_contexts()

        await controller.start_recording(lambda payload: None)

        [start] = telemetry.get_spans(SpanKind.CAPTURE_START)
        assert start.status == "ok"
        assert start.attributes[Attr.CONSTRAINT_STAGE] == "enhanced"
        assert start.attributes[Attr.LOW_LATENCY_USED] is True
        assert len(telemetry.get_spans(SpanKind.CAPTURE_NEGOTIATE)) == 1

    async def test_failed_start_span(self) -> None:
        telemetry = MockTelemetryProvider()
        controller = _controller(
            MockCaptureEngine(acquire_outcomes=[PermissionDeniedError()]), telemetry=telemetry
        )
        controller.initialize_contexts()

        with pytest.raises(PermissionDeniedError):
            await controller.start_recording(lambda payload: None)

        [start] = telemetry.get_spans(SpanKind.CAPTURE_START)
        assert start.status == "error"
        [negotiate] = telemetry.get_spans(SpanKind.CAPTURE_NEGOTIATE)
        assert negotiate.status == "error"

    async def test_playback_metric(self, output_engine: MockOutputEngine) -> None:
        telemetry = MockTelemetryProvider()
        controller = _controller(output=output_engine, telemetry=telemetry)
        controller.initialize_contexts()

        await controller.queue_model_audio(_pcm16_base64(2400))

        [metric] = telemetry.get_metrics(Metric.PLAYBACK_SCHEDULED_MS)
        assert metric.value == pytest.approx(100.0)
        [span] = telemetry.get_spans(SpanKind.PLAYBACK_ENQUEUE)
        assert span.attributes[Attr.PLAYBACK_RATE] == 1.0
