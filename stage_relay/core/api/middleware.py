"""
API Middleware - Security and error handling for the relay endpoints.

Provides:
- Localhost-only access enforcement
- CORS headers for the browser client
- Unified error response formatting
- Request logging
"""

import time
import traceback
from typing import Callable

from aiohttp import web

from stage_relay.core.logging_utils import get_module_logger


logger = get_module_logger("APIMiddleware")

# Debug mode flag - set via RelayServer
_debug_mode: bool = False

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable debug mode for verbose error responses."""
    global _debug_mode
    _debug_mode = enabled
    logger.debug("API debug mode %s", "enabled" if enabled else "disabled")


def is_debug_mode() -> bool:
    return _debug_mode


@web.middleware
async def localhost_only_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Rejects requests from any IP other than 127.0.0.1 or ::1."""
    peername = request.transport.get_extra_info("peername") if request.transport else None
    if peername:
        remote_ip = peername[0]
        localhost_ips = {"127.0.0.1", "::1", "::ffff:127.0.0.1"}

        if remote_ip not in localhost_ips:
            logger.warning("Rejected request from non-localhost IP: %s", remote_ip)
            return web.json_response(
                {
                    "error": {
                        "code": "ACCESS_DENIED",
                        "message": "Relay access is restricted to localhost only",
                    },
                    "status": 403,
                },
                status=403,
            )

    return await handler(request)


@web.middleware
async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Allow the viewer to be served from a different origin."""
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=CORS_HEADERS)

    response = await handler(request)
    # Streaming responses have already sent their headers
    if not response.prepared:
        response.headers.update(CORS_HEADERS)
    return response


@web.middleware
async def request_logging_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Logs method, path, status and latency of each request."""
    start_time = time.perf_counter()
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        logger.debug(
            "%s %s -> %d (%.1f ms)",
            request.method, request.path, exc.status, (time.perf_counter() - start_time) * 1000,
        )
        raise

    logger.debug(
        "%s %s -> %d (%.1f ms)",
        request.method, request.path, response.status, (time.perf_counter() - start_time) * 1000,
    )
    return response


@web.middleware
async def error_handling_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """
    Middleware to catch and format unexpected errors as JSON responses.

    Handlers return their own documented error bodies; this only covers
    what escapes them:
    {
        "error": {
            "code": "ERROR_CODE",
            "message": "Human-readable message",
            "details": { ... }  # Optional
        },
        "status": 500
    }
    """
    try:
        return await handler(request)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        return web.json_response(
            {
                "error": {
                    "code": e.reason.upper().replace(" ", "_") if e.reason else "HTTP_ERROR",
                    "message": e.text or str(e),
                },
                "status": e.status,
            },
            status=e.status,
        )
    except ValueError as e:
        logger.warning("Validation error: %s", e)
        return web.json_response(
            {
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": str(e),
                },
                "status": 400,
            },
            status=400,
        )
    except Exception as e:
        tb = traceback.format_exc()
        logger.error("Unexpected error: %s\n%s", e, tb)

        error_response = {
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            },
            "status": 500,
        }

        # In debug mode, include full stack trace
        if _debug_mode:
            error_response["error"]["details"]["traceback"] = tb.split("\n")
            error_response["error"]["details"]["request"] = {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query) if request.query else None,
            }

        return web.json_response(error_response, status=500)
