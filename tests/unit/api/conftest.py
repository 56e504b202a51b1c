"""Pytest fixtures for API unit tests.

Builds a real RelayController whose discovery strategies and capture
spawner are fakes, so the HTTP and WebSocket routes can be driven with
aiohttp's test client without touching the network or ffmpeg.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Coroutine, Iterable, Optional, TypeVar

import pytest
from aiohttp import web

from stage_relay.core.api import RelayController, create_app
from stage_relay.core.capture import CaptureSessionManager
from stage_relay.core.discovery import DiscoveryMethod, DiscoveryResult, ServiceDiscoverer
from stage_relay.core.settings import CaptureSettings, RelaySettings
from tests.infrastructure.mocks.capture_mocks import FakeProber, FakeSpawner, streaming


T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FixedStrategy:
    """Discovery strategy returning a fixed set of names."""

    def __init__(self, method: DiscoveryMethod, names: Iterable[str]):
        self.method = method
        self.names = frozenset(names)

    async def run(self) -> DiscoveryResult:
        return DiscoveryResult(self.method, self.names)


def make_controller(
    media_root: Path,
    *,
    spawner: Optional[FakeSpawner] = None,
    prober: Optional[FakeProber] = None,
    mdns_names: Iterable[str] = (),
    local_names: Iterable[str] = (),
) -> RelayController:
    """RelayController over fakes. Call inside the test's event loop."""
    settings = RelaySettings(
        media_root=media_root,
        capture=CaptureSettings(first_data_timeout=2.0, stop_timeout=0.5),
    )
    discoverer = ServiceDiscoverer([
        FixedStrategy(DiscoveryMethod.MDNS, mdns_names),
        FixedStrategy(DiscoveryMethod.LOCAL_PROBE, local_names),
    ])
    manager = CaptureSessionManager(
        settings.capture,
        spawner=spawner or streaming(),
        prober=prober,
        probe_bridge=False,
    )
    return RelayController(settings, discoverer=discoverer, manager=manager)


def create_test_app(controller: RelayController) -> web.Application:
    """Create a test aiohttp application with all routes and middleware."""
    return create_app(controller)


@pytest.fixture
def media_root(tmp_path: Path) -> Path:
    """Empty media directory used as the frame-rate root."""
    root = tmp_path / "media"
    root.mkdir()
    return root
