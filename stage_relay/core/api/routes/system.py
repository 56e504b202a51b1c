"""
System Routes - Health endpoint.
"""

from aiohttp import web

from ..controller import RelayController


def setup_system_routes(app: web.Application, controller: RelayController) -> None:
    """Register system routes."""
    app.router.add_get("/health", health_handler)


async def health_handler(request: web.Request) -> web.Response:
    """GET /health - Liveness plus a snapshot of running sessions."""
    controller: RelayController = request.app["controller"]
    result = await controller.health_check()
    return web.json_response(result)
