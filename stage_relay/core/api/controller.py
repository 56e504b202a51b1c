"""
Relay Controller - Thin wrapper around discovery, capture and media parsing.

Route handlers call into this object rather than the components directly,
so tests can swap any of them out.
"""

import datetime
import platform
from pathlib import Path
from typing import Any, Dict, List, Optional

from stage_relay.core.capture import CaptureSessionManager, OutputFormat, Subscription
from stage_relay.core.discovery import ServiceDiscoverer
from stage_relay.core.logging_utils import get_module_logger
from stage_relay.core.media import read_frame_rate, resolve_media_path
from stage_relay.core.settings import RelaySettings

SERVICE_NAME = "stage-relay"


class RelayController:
    """Operations exposed over HTTP and WebSocket."""

    def __init__(
        self,
        settings: RelaySettings,
        discoverer: Optional[ServiceDiscoverer] = None,
        manager: Optional[CaptureSessionManager] = None,
    ):
        self.logger = get_module_logger("RelayController")
        self.settings = settings
        self.discoverer = discoverer or ServiceDiscoverer.from_settings(settings.discovery)
        self.manager = manager or CaptureSessionManager(settings.capture)
        self.started_at = datetime.datetime.now()

    # =========================================================================
    # System
    # =========================================================================

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "timestamp": datetime.datetime.now().isoformat(),
            "uptime_seconds": round((datetime.datetime.now() - self.started_at).total_seconds(), 1),
            "platform": platform.system().lower(),
            "sessions": self.manager.sessions(),
        }

    async def shutdown(self) -> None:
        await self.manager.shutdown()

    # =========================================================================
    # Discovery
    # =========================================================================

    async def discover_sources(self) -> List[str]:
        names = await self.discoverer.discover_names()
        self.logger.info("Discovery returned %d source(s)", len(names))
        return names

    # =========================================================================
    # Streams
    # =========================================================================

    async def open_stream(self, source: str, output: OutputFormat = OutputFormat.JPEG_FRAMES) -> Subscription:
        return await self.manager.attach(source, output)

    async def close_stream(self, subscription: Optional[Subscription]) -> None:
        if subscription is not None:
            await self.manager.detach(subscription)

    # =========================================================================
    # Media
    # =========================================================================

    def resolve_media(self, requested: str) -> Path:
        """Raises PathOutsideRootError for paths escaping the media root."""
        return resolve_media_path(self.settings.media_root, requested)

    async def frame_rate(self, path: Path) -> Optional[int]:
        """Raises FileNotFoundError / OSError from the read."""
        return await read_frame_rate(
            path,
            prefix_bytes=self.settings.metadata_prefix_bytes,
            max_movie_box_bytes=self.settings.max_movie_box_bytes,
            logger=self.logger,
        )
