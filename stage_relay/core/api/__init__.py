"""HTTP and WebSocket transport for the relay."""

from .controller import RelayController
from .server import RelayServer, create_app

__all__ = ["RelayController", "RelayServer", "create_app"]
