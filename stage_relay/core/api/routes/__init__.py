"""
API route modules.

- system: Health and session status
- discovery: Network video source lookup
- websocket: JPEG frame delivery
- stream: MPEG-TS passthrough
- framerate: MP4 frame-rate detection
"""

from .discovery import setup_discovery_routes
from .framerate import setup_framerate_routes
from .stream import setup_stream_routes
from .system import setup_system_routes
from .websocket import setup_websocket_routes


def setup_all_routes(app, controller):
    """Register all relay routes with the application.

    WebSocket routes go in before the passthrough routes because
    ``/stream/ws`` would otherwise match ``/stream/{name}``.
    """
    setup_system_routes(app, controller)
    setup_discovery_routes(app, controller)
    setup_websocket_routes(app, controller)
    setup_stream_routes(app, controller)
    setup_framerate_routes(app, controller)


__all__ = [
    "setup_all_routes",
    "setup_discovery_routes",
    "setup_framerate_routes",
    "setup_stream_routes",
    "setup_system_routes",
    "setup_websocket_routes",
]
