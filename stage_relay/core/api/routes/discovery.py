"""
Discovery Routes - Network video source lookup.
"""

from aiohttp import web

from ..controller import RelayController


def setup_discovery_routes(app: web.Application, controller: RelayController) -> None:
    """Register discovery routes."""
    app.router.add_get("/discover", discover_handler)
    app.router.add_get("/ndi/discover", discover_handler)


async def discover_handler(request: web.Request) -> web.Response:
    """GET /discover - JSON array of source names.

    Takes as long as the discovery window (5 s by default).
    """
    controller: RelayController = request.app["controller"]
    names = await controller.discover_sources()
    return web.json_response(names)
