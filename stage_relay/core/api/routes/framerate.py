"""
Frame Rate Routes - MP4 frame-rate detection for files under the media root.
"""

from aiohttp import web

from stage_relay.core.media import PathOutsideRootError

from ..controller import RelayController


def setup_framerate_routes(app: web.Application, controller: RelayController) -> None:
    """Register frame-rate routes."""
    app.router.add_get("/framerate", framerate_handler)
    app.router.add_get("/api/video/framerate", framerate_handler)


async def framerate_handler(request: web.Request) -> web.Response:
    """GET /framerate?path=... - ``{"fps": int}`` for an MP4 file.

    ``videoPath`` is accepted as the parameter name as well.
    """
    controller: RelayController = request.app["controller"]
    requested = request.query.get("path") or request.query.get("videoPath")
    if not requested:
        return web.json_response({"error": "path parameter is required"}, status=400)

    try:
        path = controller.resolve_media(requested)
    except PathOutsideRootError:
        controller.logger.warning("Rejected frame-rate request outside media root: %s", requested)
        return web.json_response({"error": "Access denied: path outside media root"}, status=403)

    if not path.is_file():
        return web.json_response({"error": "Video file not found"}, status=404)

    try:
        fps = await controller.frame_rate(path)
    except FileNotFoundError:
        return web.json_response({"error": "Video file not found"}, status=404)
    except OSError as exc:
        controller.logger.error("Failed to read %s: %s", path, exc)
        return web.json_response(
            {"error": "Failed to read video file", "message": str(exc)},
            status=500,
        )

    if fps is None:
        return web.json_response({"error": "Frame rate not found in MP4 header"}, status=404)
    return web.json_response({"fps": fps})
