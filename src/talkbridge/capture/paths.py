"""Processing paths wired onto the capture source.

Two mutually exclusive variants exist:

- :class:`LowLatencyPath`: an off-thread processing node that posts PCM16
  chunks as messages. It produces no audible output, so it routes through a
  silent gain node (the monitor sink) to keep the engine pumping.
- :class:`PeriodicCallbackPath`: a fixed-size buffer node whose callback
  runs synchronously, connected straight to the destination.

:class:`ProcessingPathSelector` prefers the first and downgrades to the
second when setup fails at any step.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from talkbridge.engine.base import PCM_ENCODER_MODULE
from talkbridge.exceptions import (
    AcquisitionError,
    ProcessingSetupError,
    RecordingCancelledError,
)

if TYPE_CHECKING:
    from talkbridge.capture.session import CaptureSession
    from talkbridge.engine.base import (
        BufferCallback,
        CaptureEngine,
        GraphNode,
        NodeMessageCallback,
    )

logger = logging.getLogger("talkbridge.capture.paths")

PERIODIC_BUFFER_SIZE = 4096
LOW_LATENCY_UNSUPPORTED = "unsupported"


class ModuleRegistry:
    """Process-scoped record of installed processing modules.

    Written only by :meth:`ensure`, which the selector calls from the event
    loop thread, so no lock is needed. Tests call :meth:`reset` between
    cases.
    """

    def __init__(self) -> None:
        self._installed: set[str] = set()

    def is_installed(self, name: str) -> bool:
        return name in self._installed

    async def ensure(self, engine: CaptureEngine, name: str) -> bool:
        """Install ``name`` unless already installed. Returns True if it ran."""
        if name in self._installed:
            return False
        await engine.install_module(name)
        self._installed.add(name)
        logger.debug("Module %s installed", name)
        return True

    def reset(self) -> None:
        self._installed.clear()


default_module_registry = ModuleRegistry()


def reset_module_registry() -> None:
    """Forget every module installed through the default registry."""
    default_module_registry.reset()


@dataclass
class LowLatencyPath:
    processing_node: GraphNode
    monitor_sink: GraphNode
    module_loaded: bool = True

    def teardown(self, session: CaptureSession | None = None) -> None:
        if session is not None:
            session.disconnect_source(self.processing_node)
        self.processing_node.close()
        self.monitor_sink.close()


@dataclass
class PeriodicCallbackPath:
    processing_node: GraphNode

    def teardown(self, session: CaptureSession | None = None) -> None:
        if session is not None:
            session.disconnect_source(self.processing_node)
        self.processing_node.close()


ProcessingPath = LowLatencyPath | PeriodicCallbackPath


@dataclass
class PathSelection:
    """The active path and, when it is the periodic one, why."""

    path: ProcessingPath
    fallback_reason: str | None = None

    @property
    def low_latency_used(self) -> bool:
        return isinstance(self.path, LowLatencyPath)


def _no_checkpoint() -> None:
    return None


class ProcessingPathSelector:
    """Decides and wires the processing path for a capture session.

    Args:
        engine: Capture engine that builds the nodes.
        on_message: Receives low-latency node messages.
        on_buffer: Receives periodic node buffers.
        registry: Install-once record for processing modules.
        low_latency_enabled: Set False to always use the periodic path.
        buffer_size: Periodic node buffer size in samples.
        checkpoint: Called after every suspension point; raises
            :class:`RecordingCancelledError` when the recording was stopped.
    """

    def __init__(
        self,
        engine: CaptureEngine,
        *,
        on_message: NodeMessageCallback,
        on_buffer: BufferCallback,
        registry: ModuleRegistry | None = None,
        low_latency_enabled: bool = True,
        buffer_size: int = PERIODIC_BUFFER_SIZE,
        checkpoint: Callable[[], None] | None = None,
    ) -> None:
        self.engine = engine
        self.on_message = on_message
        self.on_buffer = on_buffer
        self.registry = registry if registry is not None else default_module_registry
        self.low_latency_enabled = low_latency_enabled
        self.buffer_size = buffer_size
        self._checkpoint = checkpoint or _no_checkpoint

    async def select(self, session: CaptureSession) -> PathSelection:
        """Wire exactly one processing path onto ``session``.

        Raises:
            ProcessingSetupError: Neither path could be set up.
            AcquisitionError: The session died and could not be re-acquired.
            RecordingCancelledError: The recording was stopped meanwhile.
        """
        if not (self.low_latency_enabled and self.engine.supports_low_latency):
            reason = LOW_LATENCY_UNSUPPORTED
        else:
            try:
                return PathSelection(await self.setup_low_latency(session))
            except RecordingCancelledError:
                raise
            except AcquisitionError as exc:
                if exc.fatal:
                    raise
                reason = str(exc) or type(exc).__name__
            except Exception as exc:
                reason = str(exc) or type(exc).__name__
            logger.warning("Low-latency path unavailable, using periodic callbacks: %s", reason)

        return PathSelection(await self.setup_periodic(session), fallback_reason=reason)

    async def setup_low_latency(self, session: CaptureSession) -> LowLatencyPath:
        await session.ensure_live()
        self._checkpoint()

        if await self.registry.ensure(self.engine, PCM_ENCODER_MODULE):
            self._checkpoint()
        if not session.is_live():
            logger.warning("Capture track ended during module install; re-acquiring")
            await session.reacquire()
            self._checkpoint()

        node: GraphNode | None = None
        sink: GraphNode | None = None
        try:
            node = self.engine.create_low_latency_node(self.on_message)
            sink = self.engine.create_gain(0.0)
            session.connect_source(node)
            node.connect(sink)
            sink.connect(self.engine.destination)
        except Exception:
            if node is not None:
                session.disconnect_source(node)
                node.close()
            if sink is not None:
                sink.close()
            raise
        return LowLatencyPath(processing_node=node, monitor_sink=sink, module_loaded=True)

    async def setup_periodic(self, session: CaptureSession) -> PeriodicCallbackPath:
        await session.ensure_live()
        self._checkpoint()

        node: GraphNode | None = None
        try:
            node = self.engine.create_periodic_node(self.buffer_size, self.on_buffer)
            session.connect_source(node)
            node.connect(self.engine.destination)
        except Exception as exc:
            if node is not None:
                session.disconnect_source(node)
                node.close()
            raise ProcessingSetupError(f"periodic processing path failed: {exc}") from exc
        return PeriodicCallbackPath(processing_node=node)
