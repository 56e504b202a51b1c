"""
WebSocket Routes - JPEG frame delivery over a JSON message protocol.

Client -> server:
    {"type": "connect", "streamName": "..."}
    {"type": "disconnect"}

Server -> client:
    {"type": "connected", "streamName": "...", "method": "bridgeCapture" | "directCapture"}
    {"type": "frame", "data": "<base64 jpeg>", "format": "jpeg"}
    {"type": "error", "message": "...", "instructions": [...]}
    {"type": "closed", "message": "..."}
"""

import asyncio
import base64
import json
from typing import Any, Dict, Optional

from aiohttp import WSMsgType, web

from stage_relay.core.asyncio_utils import cancel_and_wait, create_logged_task
from stage_relay.core.capture import (
    CaptureError,
    CaptureStartFailure,
    CaptureStrategy,
    OutputFormat,
    Subscription,
)

from ..controller import RelayController

METHOD_LABELS = {
    CaptureStrategy.BRIDGE: "OBS Virtual Camera",
    CaptureStrategy.DIRECT: "Direct NDI",
}


def setup_websocket_routes(app: web.Application, controller: RelayController) -> None:
    """Register WebSocket routes."""
    app.router.add_get("/stream/ws", websocket_handler)
    app.router.add_get("/ndi/ws", websocket_handler)


def error_message(exc: Exception) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"type": "error", "message": str(exc)}
    if isinstance(exc, CaptureStartFailure):
        payload["error"] = exc.error
        payload["solution"] = exc.solution
        payload["instructions"] = list(exc.instructions)
    return payload


class FrameStreamConnection:
    """State of one WebSocket client: at most one attached stream."""

    def __init__(self, ws: web.WebSocketResponse, controller: RelayController):
        self.ws = ws
        self.controller = controller
        self.logger = controller.logger
        self.subscription: Optional[Subscription] = None
        self.stream_name: Optional[str] = None
        self._stream_task: Optional[asyncio.Task] = None

    async def send(self, payload: Dict[str, Any]) -> None:
        if self.ws.closed:
            return
        try:
            await self.ws.send_json(payload)
        except ConnectionResetError:
            self.logger.debug("WebSocket closed while sending %s", payload.get("type"))

    async def handle_text(self, text: str) -> None:
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            await self.send({"type": "error", "message": "Invalid JSON message"})
            return
        if not isinstance(message, dict):
            await self.send({"type": "error", "message": "Message must be a JSON object"})
            return

        kind = message.get("type")
        if kind == "connect":
            await self.connect(message.get("streamName"))
        elif kind == "disconnect":
            await self.disconnect()
        else:
            await self.send({"type": "error", "message": f"Unknown message type: {kind!r}"})

    async def connect(self, stream_name: Any) -> None:
        if not isinstance(stream_name, str) or not stream_name.strip():
            await self.send({"type": "error", "message": "streamName is required"})
            return

        await self.disconnect()
        self.logger.info("WebSocket connecting to %s", stream_name)
        # The receive loop keeps running so a disconnect can cancel a pending start
        self._stream_task = create_logged_task(
            self._stream(stream_name),
            logger=self.logger,
            context=f"ws stream {stream_name}",
        )

    async def _stream(self, stream_name: str) -> None:
        try:
            subscription = await self.controller.open_stream(stream_name, OutputFormat.JPEG_FRAMES)
        except CaptureError as exc:
            await self.send(error_message(exc))
            return

        self.subscription = subscription
        self.stream_name = stream_name
        if self.ws.closed:
            return

        strategy = subscription.strategy
        await self.send({
            "type": "connected",
            "streamName": stream_name,
            "method": strategy.value if strategy else None,
            "methodLabel": METHOD_LABELS.get(strategy),
        })
        await self._pump(subscription)

    async def _pump(self, subscription: Subscription) -> None:
        try:
            async for frame in subscription:
                if self.ws.closed:
                    return
                await self.send({
                    "type": "frame",
                    "data": base64.b64encode(frame.data).decode("ascii"),
                    "format": "jpeg",
                })
        except CaptureError as exc:
            await self.send(error_message(exc))
        else:
            await self.send({"type": "closed", "message": subscription.close_message or "Stream ended"})

    async def disconnect(self) -> None:
        task, self._stream_task = self._stream_task, None
        await cancel_and_wait(task)
        subscription, self.subscription = self.subscription, None
        if subscription is not None:
            self.logger.info("WebSocket disconnecting from %s", self.stream_name)
            await asyncio.shield(self.controller.close_stream(subscription))
        self.stream_name = None


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    """GET /stream/ws - Frame stream WebSocket."""
    controller: RelayController = request.app["controller"]
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)
    controller.logger.info("WebSocket connection established")

    connection = FrameStreamConnection(ws, controller)
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await connection.handle_text(msg.data)
            elif msg.type == WSMsgType.BINARY:
                await connection.send({"type": "error", "message": "Binary messages are not supported"})
            elif msg.type == WSMsgType.ERROR:
                controller.logger.warning("WebSocket error: %s", ws.exception())
    finally:
        await connection.disconnect()
        controller.logger.info("WebSocket connection closed")

    return ws
