"""
Stream Routes - HTTP MPEG-TS passthrough of a network source.
"""

import asyncio

from aiohttp import web

from stage_relay.core.capture import CaptureError, CaptureStartFailure, OutputFormat

from ..controller import RelayController
from ..middleware import CORS_HEADERS


def setup_stream_routes(app: web.Application, controller: RelayController) -> None:
    """Register passthrough routes.

    Must run after the WebSocket routes so ``/stream/ws`` is matched first.
    """
    app.router.add_get("/stream/{name}", stream_handler)
    app.router.add_get("/ndi/stream/{name}", stream_handler)


async def stream_handler(request: web.Request) -> web.StreamResponse:
    """GET /stream/{name} - Chunked ``video/mp2t`` until either side stops."""
    controller: RelayController = request.app["controller"]
    name = request.match_info["name"]
    controller.logger.info("Passthrough requested for %s", name)

    try:
        subscription = await controller.open_stream(name, OutputFormat.MPEG_TS)
    except CaptureStartFailure as exc:
        return web.json_response(exc.to_dict(), status=501)
    except CaptureError as exc:
        return web.json_response(
            {"error": "Stream unavailable", "message": str(exc), "streamName": name},
            status=503,
        )

    response = web.StreamResponse(
        status=200,
        headers={
            "Content-Type": "video/mp2t",
            "Cache-Control": "no-cache",
            **CORS_HEADERS,
        },
    )
    response.enable_chunked_encoding()

    try:
        await response.prepare(request)
        async for chunk in subscription:
            await response.write(chunk.data)
    except CaptureError as exc:
        # Headers are already out; ending the body is all that is left
        controller.logger.warning("Passthrough of %s ended with error: %s", name, exc)
    except ConnectionResetError:
        controller.logger.info("Passthrough client for %s disconnected", name)
    finally:
        await asyncio.shield(controller.close_stream(subscription))

    if not request.transport or request.transport.is_closing():
        return response
    try:
        await response.write_eof()
    except ConnectionResetError:
        pass
    return response
