"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Iterator
from typing import Any

import pytest

from talkbridge.capture.paths import reset_module_registry
from talkbridge.engine.mock import MockCaptureEngine, MockOutputEngine


@pytest.fixture(autouse=True)
def _fresh_module_registry() -> Iterator[None]:
    """The install-once flag is process-wide; isolate it per test."""
    reset_module_registry()
    yield
    reset_module_registry()


@pytest.fixture
def advance() -> Callable[[int], Coroutine[Any, Any, None]]:
    """Yield control to let pending callbacks run without real delay::

    await advance()       # 5 yields (default)
    await advance(10)
    """

    async def _advance(n: int = 5) -> None:
        for _ in range(n):
            await asyncio.sleep(0)

    return _advance


@pytest.fixture
def capture_engine() -> MockCaptureEngine:
    return MockCaptureEngine()


@pytest.fixture
def output_engine() -> MockOutputEngine:
    return MockOutputEngine()
