"""
Relay Server - aiohttp application serving discovery, streams and metadata.
"""

from typing import Optional

from aiohttp import web

from stage_relay.core.logging_utils import get_module_logger

from .controller import RelayController
from .middleware import (
    cors_middleware,
    error_handling_middleware,
    localhost_only_middleware,
    request_logging_middleware,
    set_debug_mode,
)
from .routes import setup_all_routes


logger = get_module_logger("RelayServer")


def create_app(controller: RelayController, *, localhost_only: bool = False) -> web.Application:
    """Build the aiohttp application around ``controller``.

    Middleware order: localhost check -> CORS -> request logging -> error handling.
    """
    middlewares = [cors_middleware, request_logging_middleware, error_handling_middleware]
    if localhost_only:
        middlewares.insert(0, localhost_only_middleware)

    app = web.Application(middlewares=middlewares)
    app["controller"] = controller
    setup_all_routes(app, controller)

    async def _on_shutdown(app: web.Application) -> None:
        # Runs before open WebSockets and stream responses are torn down
        await controller.shutdown()

    app.on_shutdown.append(_on_shutdown)
    return app


class RelayServer:
    """
    HTTP/WebSocket server for the relay.

    Runs on the current event loop; ``start()`` returns once the socket is
    listening and ``stop()`` tears the sessions and the listener down.
    """

    def __init__(
        self,
        controller: RelayController,
        host: str = "0.0.0.0",
        port: int = 8080,
        localhost_only: bool = False,
        debug: bool = False,
    ):
        """
        Initialize the relay server.

        Args:
            controller: RelayController wrapping discovery and capture
            host: Host to bind to
            port: Port to bind to
            localhost_only: If True, reject requests from non-localhost
            debug: If True, include tracebacks in error responses
        """
        self.controller = controller
        self.host = host
        self.port = port
        self.localhost_only = localhost_only
        self.debug = debug

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._running = False

        set_debug_mode(debug)

    async def start(self) -> None:
        """Start the server (non-blocking)."""
        if self._running:
            logger.warning("Relay server already running")
            return

        self._app = create_app(self.controller, localhost_only=self.localhost_only)
        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        self._running = True
        mode_info = " (debug mode)" if self.debug else ""
        logger.info("Relay server started on http://%s:%d%s", self.host, self.port, mode_info)
        logger.info("Discovery endpoint: %s/discover", self.url)
        logger.info("WebSocket endpoint: ws://%s:%d/stream/ws", self.host, self.port)

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping relay server...")

        if self._site:
            await self._site.stop()
            self._site = None

        if self._runner:
            # Fires on_shutdown, which stops every capture session
            await self._runner.cleanup()
            self._runner = None

        self._app = None
        self._running = False

        logger.info("Relay server stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"
