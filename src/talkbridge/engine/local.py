"""Local audio engines using the system microphone and speakers.

Requires the ``sounddevice`` package and a PortAudio shared library::

    pip install talkbridge

Usage::

    from talkbridge.engine.local import LocalCaptureEngine, LocalOutputEngine

    controller = AudioController(
        capture_engine_factory=lambda config: LocalCaptureEngine(device="USB Mic"),
        output_engine_factory=lambda config: LocalOutputEngine(latency="low"),
    )

PortAudio invokes the stream callbacks on its own audio thread. Nothing in
these callbacks touches the event loop directly: results are handed back
with ``loop.call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import sys
import threading
from typing import TYPE_CHECKING, Any

import numpy as np

from talkbridge.audio.base import OUTPUT_SAMPLE_RATE, PCM_SAMPLE_RATE
from talkbridge.audio.encoder import float_to_int16
from talkbridge.audio.resample import LinearResampler
from talkbridge.engine.base import (
    PCM_ENCODER_MODULE,
    BufferCallback,
    BufferSource,
    CaptureEngine,
    DeviceStream,
    DeviceTrack,
    GraphNode,
    NodeMessageCallback,
    OutputEngine,
    SourceNode,
    TrackState,
)
from talkbridge.exceptions import (
    AcquisitionError,
    AcquisitionErrorCategory,
    ConstraintNotSatisfiableError,
    DeviceBusyError,
    DeviceNotFoundError,
    PermissionDeniedError,
)

if TYPE_CHECKING:
    from talkbridge.audio.base import DecodedAudio
    from talkbridge.capture.constraints import CaptureConfig

logger = logging.getLogger("talkbridge.engine.local")

# PortAudio error codes (portaudio.h, PaErrorCode)
_PA_INVALID_CHANNEL_COUNT = -9998
_PA_INVALID_SAMPLE_RATE = -9997
_PA_INVALID_DEVICE = -9996
_PA_SAMPLE_FORMAT_NOT_SUPPORTED = -9994
_PA_DEVICE_UNAVAILABLE = -9985

_CODE_CATEGORIES: dict[int, AcquisitionErrorCategory] = {
    _PA_INVALID_CHANNEL_COUNT: AcquisitionErrorCategory.CONSTRAINT_NOT_SATISFIABLE,
    _PA_INVALID_SAMPLE_RATE: AcquisitionErrorCategory.CONSTRAINT_NOT_SATISFIABLE,
    _PA_SAMPLE_FORMAT_NOT_SUPPORTED: AcquisitionErrorCategory.CONSTRAINT_NOT_SATISFIABLE,
    _PA_INVALID_DEVICE: AcquisitionErrorCategory.DEVICE_NOT_FOUND,
    _PA_DEVICE_UNAVAILABLE: AcquisitionErrorCategory.DEVICE_BUSY,
}

_MESSAGE_CATEGORIES: tuple[tuple[tuple[str, ...], AcquisitionErrorCategory], ...] = (
    (
        ("permission", "not permitted", "access denied", "not authorized"),
        AcquisitionErrorCategory.PERMISSION_DENIED,
    ),
    (
        ("busy", "in use", "unavailable", "exclusive"),
        AcquisitionErrorCategory.DEVICE_BUSY,
    ),
    (
        ("no input device", "no default input", "invalid device", "not found", "no such"),
        AcquisitionErrorCategory.DEVICE_NOT_FOUND,
    ),
    (
        ("sample rate", "samplerate", "channel", "sample format", "not supported"),
        AcquisitionErrorCategory.CONSTRAINT_NOT_SATISFIABLE,
    ),
)


def _import_sounddevice() -> Any:
    """Import sounddevice, raising a clear error if missing."""
    try:
        import sounddevice as _sd

        return _sd
    except (ImportError, OSError) as exc:
        raise ImportError(
            "sounddevice with a working PortAudio library is required for the "
            "local audio engines. Install it with: pip install sounddevice"
        ) from exc


def classify_device_error(
    exc: BaseException,
    *,
    fallback: AcquisitionErrorCategory = AcquisitionErrorCategory.GENERIC,
) -> AcquisitionErrorCategory:
    """Map a ``sounddevice.PortAudioError`` (or ``ValueError``) to a category.

    The PortAudio error code wins when present; otherwise the message text
    is matched, and ``fallback`` is used when nothing matches.
    """
    args = getattr(exc, "args", ())
    if len(args) > 1 and isinstance(args[1], int) and args[1] in _CODE_CATEGORIES:
        return _CODE_CATEGORIES[args[1]]

    message = str(exc).lower()
    for needles, category in _MESSAGE_CATEGORIES:
        if any(needle in message for needle in needles):
            return category
    return fallback


def _acquisition_error(category: AcquisitionErrorCategory, detail: str) -> AcquisitionError:
    if category is AcquisitionErrorCategory.PERMISSION_DENIED:
        return PermissionDeniedError()
    if category is AcquisitionErrorCategory.DEVICE_NOT_FOUND:
        return DeviceNotFoundError()
    if category is AcquisitionErrorCategory.DEVICE_BUSY:
        return DeviceBusyError()
    if category is AcquisitionErrorCategory.CONSTRAINT_NOT_SATISFIABLE:
        return ConstraintNotSatisfiableError(detail)
    return AcquisitionError(detail)


def _post(loop: asyncio.AbstractEventLoop | None, callback: Any, *args: Any) -> None:
    """Run ``callback`` on the event loop thread."""
    if loop is None or loop.is_closed():
        callback(*args)
        return
    try:
        loop.call_soon_threadsafe(callback, *args)
    except RuntimeError:
        logger.debug("Event loop closed; dropping %r", callback)


# -----------------------------------------------------------------------------
# Capture
# -----------------------------------------------------------------------------


class LocalDeviceTrack(DeviceTrack):
    """A PortAudio input stream seen as a capture track.

    The track ends when :meth:`stop` is called or when PortAudio finishes
    the stream on its own (device unplugged, host API error).
    """

    def __init__(
        self,
        *,
        label: str,
        device_info: dict[str, Any],
        sample_rate: int,
        channels: int,
        dtype: str,
        loop: asyncio.AbstractEventLoop | None,
    ) -> None:
        super().__init__(label)
        self.device_info = device_info
        self.sample_rate = sample_rate
        self.channels = channels
        self.dtype = dtype
        self._loop = loop
        self._stream: Any = None
        self._stopped = False
        self._lost = False
        self._sources: tuple[LocalSourceNode, ...] = ()

    @property
    def ready_state(self) -> TrackState:
        if self._stopped or self._lost:
            return TrackState.ENDED
        if self._stream is not None and not self._stream.active:
            return TrackState.ENDED
        return TrackState.LIVE

    def attach(self, stream: Any) -> None:
        self._stream = stream

    def add_source(self, source: LocalSourceNode) -> None:
        self._sources = (*self._sources, source)

    def remove_source(self, source: LocalSourceNode) -> None:
        self._sources = tuple(s for s in self._sources if s is not source)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._sources = ()
        stream = self._stream
        if stream is None:
            return
        try:
            stream.stop()
        except Exception:
            logger.warning("Error stopping capture stream %s", self.label)
        finally:
            stream.close()
        logger.info("Capture track stopped: %s", self.label)

    def settings(self) -> dict[str, Any]:
        latency = getattr(self._stream, "latency", None) if self._stream is not None else None
        return {
            "device_id": self.label,
            "sample_rate": self.sample_rate,
            "channel_count": self.channels,
            "sample_size": 16 if self.dtype == "int16" else 32,
            # PortAudio exposes no voice processing; the OS may still apply its own
            "echo_cancellation": False,
            "noise_suppression": False,
            "auto_gain_control": False,
            "latency": latency,
        }

    def capabilities(self) -> dict[str, Any] | None:
        info = self.device_info
        return {
            "channel_count": (1, int(info.get("max_input_channels", 1))),
            "default_sample_rate": info.get("default_samplerate"),
            "latency": (
                info.get("default_low_input_latency"),
                info.get("default_high_input_latency"),
            ),
        }

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.warning("Mic status: %s", status)
        if self._stopped:
            return
        block = np.asarray(indata)
        if block.dtype == np.int16:
            block = block.astype(np.float32) / 32768.0
        for source in self._sources:
            source.push(block)

    def _on_finished(self) -> None:
        if self._stopped:
            return
        self._lost = True
        logger.warning("Capture stream %s finished unexpectedly", self.label)
        _post(self._loop, self._fire_ended)


class LocalSourceNode(SourceNode):
    """Resamples device frames to the graph rate and feeds processing nodes.

    Frames flow only while this node reaches ``destination``.
    """

    def __init__(self, stream: DeviceStream, destination: GraphNode, graph_rate: int) -> None:
        super().__init__(stream, "source")
        self._destination = destination
        self._resampler = LinearResampler(stream.sample_rate, graph_rate, stream.channels)

    def push(self, block: np.ndarray) -> None:
        if not self.reaches(self._destination):
            return
        mono = self._resampler.process(block)
        if mono.size == 0:
            return
        for out in list(self.outputs):
            process = getattr(out, "process", None)
            if process is not None:
                process(mono)

    def close(self) -> None:
        track = self.stream.track
        if isinstance(track, LocalDeviceTrack):
            track.remove_source(self)
        self._resampler.reset()
        super().close()


class LocalLowLatencyNode(GraphNode):
    """Hands frames off the PortAudio thread to a dedicated encoder thread.

    The encoder converts each block to PCM16 and posts a ``chunk`` message
    to the event loop; a conversion failure posts an ``error`` message
    instead. Messages keep capture order.
    """

    def __init__(
        self, on_message: NodeMessageCallback, loop: asyncio.AbstractEventLoop | None
    ) -> None:
        super().__init__("low-latency")
        self._on_message = on_message
        self._loop = loop
        self._queue: queue.SimpleQueue[np.ndarray | None] = queue.SimpleQueue()
        self._closed = False
        self._thread = threading.Thread(
            target=self._run, name="talkbridge-pcm-encoder", daemon=True
        )
        self._thread.start()

    def process(self, samples: np.ndarray) -> None:
        if not self._closed:
            self._queue.put(samples.copy())

    def _run(self) -> None:
        while True:
            block = self._queue.get()
            if block is None:
                return
            try:
                pcm = float_to_int16(block)
                message: dict[str, Any] = {"type": "chunk", "buffer": pcm.astype("<i2").tobytes()}
            except Exception as exc:
                message = {"type": "error", "message": str(exc) or type(exc).__name__}
            _post(self._loop, self._on_message, message)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put(None)
            if threading.current_thread() is not self._thread:
                self._thread.join(timeout=1.0)
        super().close()


class LocalPeriodicNode(GraphNode):
    """Accumulates frames into fixed-size buffers.

    Each full buffer is handed to ``on_buffer`` on the event loop thread,
    where the callback runs synchronously.
    """

    def __init__(
        self,
        buffer_size: int,
        on_buffer: BufferCallback,
        loop: asyncio.AbstractEventLoop | None,
    ) -> None:
        super().__init__("periodic")
        self.buffer_size = buffer_size
        self._on_buffer = on_buffer
        self._loop = loop
        self._pending = np.empty(0, dtype=np.float32)
        self._closed = False

    def process(self, samples: np.ndarray) -> None:
        if self._closed:
            return
        data = np.concatenate((self._pending, samples.astype(np.float32, copy=False)))
        size = self.buffer_size
        while len(data) >= size:
            _post(self._loop, self._on_buffer, data[:size].copy())
            data = data[size:]
        self._pending = data

    def close(self) -> None:
        self._closed = True
        self._pending = np.empty(0, dtype=np.float32)
        super().close()


class LocalCaptureEngine(CaptureEngine):
    """Capture engine backed by a PortAudio input stream.

    Args:
        sample_rate: Graph rate that processing nodes observe (Hz).
        device: Sounddevice input device index or name (None = default).
        block_duration_ms: PortAudio block duration. Sets the size of the
            variable chunks emitted by the low-latency path.
    """

    def __init__(
        self,
        *,
        sample_rate: int = PCM_SAMPLE_RATE,
        device: int | str | None = None,
        block_duration_ms: int = 20,
    ) -> None:
        super().__init__()
        self._sd = _import_sounddevice()
        self._sample_rate = sample_rate
        self._device = device
        self._block_duration_ms = block_duration_ms
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tracks: list[LocalDeviceTrack] = []

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def supports_low_latency(self) -> bool:
        return True

    async def resume(self) -> None:
        self._loop = asyncio.get_running_loop()
        await super().resume()

    async def acquire(self, config: CaptureConfig) -> DeviceStream:
        self._loop = asyncio.get_running_loop()
        stream = await asyncio.to_thread(self._open, config)
        self._tracks = [t for t in self._tracks if t.ready_state is TrackState.LIVE]
        self._tracks.append(stream.track)  # type: ignore[arg-type]
        return stream

    def _open(self, config: CaptureConfig) -> DeviceStream:
        sd = self._sd

        try:
            info = dict(sd.query_devices(self._device, kind="input"))
        except (ValueError, sd.PortAudioError) as exc:
            category = classify_device_error(
                exc, fallback=AcquisitionErrorCategory.DEVICE_NOT_FOUND
            )
            raise _acquisition_error(category, str(exc)) from exc

        max_channels = int(info.get("max_input_channels", 0))
        if max_channels < 1:
            raise DeviceNotFoundError()

        channels = config.channel_count or min(max_channels, 2)
        sample_rate = config.sample_rate or int(info["default_samplerate"])
        dtype = "int16" if config.sample_size == 16 else "float32"

        try:
            sd.check_input_settings(
                device=self._device, channels=channels, dtype=dtype, samplerate=sample_rate
            )
        except (ValueError, sd.PortAudioError) as exc:
            category = classify_device_error(
                exc, fallback=AcquisitionErrorCategory.CONSTRAINT_NOT_SATISFIABLE
            )
            raise _acquisition_error(category, str(exc)) from exc

        track = LocalDeviceTrack(
            label=str(info.get("name", "default")),
            device_info=info,
            sample_rate=sample_rate,
            channels=channels,
            dtype=dtype,
            loop=self._loop,
        )
        try:
            stream = sd.InputStream(
                samplerate=sample_rate,
                blocksize=int(sample_rate * self._block_duration_ms / 1000),
                channels=channels,
                dtype=dtype,
                device=self._device,
                callback=track._on_audio,
                finished_callback=track._on_finished,
            )
            stream.start()
        except (ValueError, sd.PortAudioError) as exc:
            category = classify_device_error(exc)
            raise _acquisition_error(category, str(exc)) from exc

        track.attach(stream)
        logger.info(
            "Mic capture opened: device=%s rate=%d channels=%d dtype=%s",
            track.label,
            sample_rate,
            channels,
            dtype,
        )
        return DeviceStream(
            track=track,
            config=config,
            sample_rate=sample_rate,
            channels=channels,
            extra={"device": track.label},
        )

    def create_source(self, stream: DeviceStream) -> SourceNode:
        source = LocalSourceNode(stream, self.destination, self._sample_rate)
        if isinstance(stream.track, LocalDeviceTrack):
            stream.track.add_source(source)
        return source

    async def install_module(self, name: str) -> None:
        if name != PCM_ENCODER_MODULE:
            raise ValueError(f"Unknown processing module: {name}")
        # First conversion pays numpy's lazy initialisation off the loop
        await asyncio.to_thread(float_to_int16, np.zeros(128, dtype=np.float32))
        logger.debug("Processing module %s installed", name)

    def create_low_latency_node(self, on_message: NodeMessageCallback) -> GraphNode:
        return LocalLowLatencyNode(on_message, self._loop)

    def create_periodic_node(self, buffer_size: int, on_buffer: BufferCallback) -> GraphNode:
        return LocalPeriodicNode(buffer_size, on_buffer, self._loop)

    async def close(self) -> None:
        for track in self._tracks:
            track.stop()
        self._tracks.clear()
        await super().close()


# -----------------------------------------------------------------------------
# Output
# -----------------------------------------------------------------------------


class LocalBufferSource(BufferSource):
    """Buffer source rendered by :class:`LocalOutputEngine`."""

    def __init__(self, decoded: DecodedAudio) -> None:
        super().__init__(decoded)
        samples = np.asarray(decoded.samples, dtype=np.float32)
        if decoded.channels > 1:
            frames = len(samples) // decoded.channels
            samples = samples[: frames * decoded.channels].reshape(frames, decoded.channels)
            samples = samples.mean(axis=1).astype(np.float32)
        self._mono = samples
        self._index = np.arange(len(samples), dtype=np.float64)
        self._source_rate = decoded.sample_rate

    def render_into(
        self, mix: np.ndarray, block_start: int, output_rate: int, gain: float
    ) -> bool:
        """Add this source's contribution to ``mix``.

        Returns True once playback has passed the end of the buffer.
        """
        if self.start_time is None:
            return False
        n = len(self._mono)
        frames = len(mix)
        start_frame = self.start_time * output_rate
        step = self.playback_rate * self._source_rate / output_rate

        rel = np.arange(block_start, block_start + frames, dtype=np.float64) - start_frame
        pos = rel * step
        mask = (rel >= 0) & (pos <= n - 1)
        if n and mask.any():
            mix[mask] += gain * np.interp(pos[mask], self._index, self._mono).astype(np.float32)
        return (block_start + frames - start_frame) * step >= n


class LocalOutputEngine(OutputEngine):
    """Persistent callback-driven speaker stream.

    PortAudio's audio thread mixes every started buffer source that
    reaches ``destination`` and feeds silence in the gaps. The render clock
    advances by exactly the frames handed to PortAudio.

    Args:
        sample_rate: Speaker playback sample rate (Hz).
        channels: Number of output channels.
        device: Sounddevice output device index or name (None = default).
        latency: PortAudio latency hint, ``"high"`` or ``"low"``.
        block_duration_ms: Duration of each rendered block.
    """

    def __init__(
        self,
        *,
        sample_rate: int = OUTPUT_SAMPLE_RATE,
        channels: int = 1,
        device: int | str | None = None,
        latency: str = "high",
        block_duration_ms: int = 20,
    ) -> None:
        super().__init__()
        self._sd = _import_sounddevice()
        self._sample_rate = sample_rate
        self._channels = channels
        self._device = device
        self._latency = latency
        self._block_duration_ms = block_duration_ms
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stream: Any = None
        self._sources: list[LocalBufferSource] = []
        self._lock = threading.Lock()
        self._frames_rendered = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def current_time(self) -> float:
        return self._frames_rendered / self._sample_rate

    async def resume(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self._stream is None:
            self._start_stream()
        await super().resume()

    def _start_stream(self) -> None:
        sd = self._sd
        blocksize = int(self._sample_rate * self._block_duration_ms / 1000)
        # macOS CoreAudio crackles with low-latency output buffers
        latency = "high" if sys.platform == "darwin" else self._latency
        out = sd.OutputStream(
            samplerate=self._sample_rate,
            blocksize=blocksize,
            channels=self._channels,
            dtype="float32",
            device=self._device,
            latency=latency,
            callback=self._render,
        )
        out.start()
        self._stream = out
        logger.info(
            "Speaker stream: rate=%dHz blocksize=%d device=%s",
            self._sample_rate,
            blocksize,
            self._device or "default",
        )

    def create_buffer_source(self, decoded: DecodedAudio) -> BufferSource:
        source = LocalBufferSource(decoded)
        with self._lock:
            self._sources.append(source)
        return source

    def _render(self, outdata: Any, frames: int, time_info: Any, status: Any) -> None:
        """Mix started sources into the output buffer; fill gaps with silence."""
        if status:
            logger.warning("Speaker callback status: %s", status)

        block_start = self._frames_rendered
        mix = np.zeros(frames, dtype=np.float32)
        finished: list[LocalBufferSource] = []

        with self._lock:
            sources = list(self._sources)

        for source in sources:
            if source.stopped:
                finished.append(source)
                continue
            gain = source.gain_to(self.destination)
            if gain is None:
                continue
            if source.render_into(mix, block_start, self._sample_rate, gain):
                finished.append(source)

        np.clip(mix, -1.0, 1.0, out=mix)
        outdata[:] = mix[:, np.newaxis]
        self._frames_rendered = block_start + frames

        if finished:
            with self._lock:
                self._sources = [s for s in self._sources if s not in finished]
            for source in finished:
                if not source.ended:
                    _post(self._loop, source._fire_ended)

    async def close(self) -> None:
        with self._lock:
            self._sources.clear()
        out = self._stream
        if out is not None:
            self._stream = None
            try:
                out.abort()
                out.close()
            except Exception:
                logger.debug("Error closing speaker stream", exc_info=True)
        await super().close()
