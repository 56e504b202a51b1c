"""Unit tests for the relay HTTP and WebSocket endpoints.

Routes are exercised through aiohttp's test client against a controller
whose discovery and capture layers are fakes.
"""

from __future__ import annotations

import asyncio
import base64

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from stage_relay.core.capture import BridgeDevice
from tests.infrastructure.helpers import ftyp, mdat, reference_movie
from tests.infrastructure.mocks.capture_mocks import (
    FakeProber,
    FakeSpawner,
    failing_start,
    make_jpeg,
    streaming,
)
from tests.unit.api.conftest import create_test_app, make_controller, run_async


# =============================================================================
# System Routes Tests
# =============================================================================


class TestSystemRoutes:
    """Tests for /health and general middleware behaviour."""

    def test_health_check(self, media_root):
        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/health")
                assert resp.status == 200
                data = await resp.json()
                assert data["status"] == "ok"
                assert data["service"] == "stage-relay"
                assert "timestamp" in data
                assert data["sessions"] == []

        run_async(do_test())

    def test_cors_headers(self, media_root):
        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/health")
                assert resp.headers["Access-Control-Allow-Origin"] == "*"

                resp = await client.options("/discover")
                assert resp.status == 204
                assert "GET" in resp.headers["Access-Control-Allow-Methods"]

        run_async(do_test())

    def test_unknown_route(self, media_root):
        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/nope")
                assert resp.status == 404
                data = await resp.json()
                assert data["status"] == 404
                assert "code" in data["error"]

        run_async(do_test())


# =============================================================================
# Discovery Routes Tests
# =============================================================================


class TestDiscoveryRoutes:
    """Tests for /discover and /ndi/discover."""

    def test_discover_merges_strategies(self, media_root):
        async def do_test():
            controller = make_controller(
                media_root,
                mdns_names=["STUDIO-PC (Cam 2)", "STUDIO-PC (Cam 1)"],
                local_names=["STUDIO-PC (Cam 1)", "Rehearsal (Wide)"],
            )
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/discover")
                assert resp.status == 200
                assert await resp.json() == [
                    "Rehearsal (Wide)",
                    "STUDIO-PC (Cam 1)",
                    "STUDIO-PC (Cam 2)",
                ]

        run_async(do_test())

    def test_discover_alias(self, media_root):
        async def do_test():
            controller = make_controller(media_root, mdns_names=["A (1)"])
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/ndi/discover")
                assert resp.status == 200
                assert await resp.json() == ["A (1)"]

        run_async(do_test())

    def test_discover_nothing_found(self, media_root):
        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/discover")
                assert resp.status == 200
                assert await resp.json() == []

        run_async(do_test())


# =============================================================================
# Frame Rate Routes Tests
# =============================================================================


class TestFrameRateRoutes:
    """Tests for /framerate and /api/video/framerate."""

    def test_frame_rate(self, media_root):
        (media_root / "clips").mkdir()
        (media_root / "clips" / "intro.mp4").write_bytes(reference_movie(version=1))

        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/framerate", params={"path": "clips/intro.mp4"})
                assert resp.status == 200
                assert await resp.json() == {"fps": 30}

                resp = await client.get("/framerate", params={"path": "/clips/intro.mp4"})
                assert (await resp.json())["fps"] == 30

        run_async(do_test())

    def test_frame_rate_alias(self, media_root):
        (media_root / "intro.mp4").write_bytes(reference_movie())

        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/api/video/framerate", params={"videoPath": "intro.mp4"})
                assert resp.status == 200
                assert await resp.json() == {"fps": 30}

        run_async(do_test())

    def test_missing_parameter(self, media_root):
        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/framerate")
                assert resp.status == 400
                assert await resp.json() == {"error": "path parameter is required"}

        run_async(do_test())

    def test_path_outside_root(self, media_root):
        (media_root.parent / "secret.mp4").write_bytes(reference_movie())

        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/framerate", params={"path": "../secret.mp4"})
                assert resp.status == 403
                assert "Access denied" in (await resp.json())["error"]

        run_async(do_test())

    def test_file_not_found(self, media_root):
        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/framerate", params={"path": "missing.mp4"})
                assert resp.status == 404
                assert await resp.json() == {"error": "Video file not found"}

                resp = await client.get("/framerate", params={"path": "."})
                assert resp.status == 404

        run_async(do_test())

    def test_no_frame_rate_in_header(self, media_root):
        (media_root / "audio_only.mp4").write_bytes(ftyp() + mdat(64))

        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/framerate", params={"path": "audio_only.mp4"})
                assert resp.status == 404
                assert await resp.json() == {"error": "Frame rate not found in MP4 header"}

        run_async(do_test())

    def test_read_failure(self, media_root):
        (media_root / "locked.mp4").write_bytes(reference_movie())

        async def do_test():
            controller = make_controller(media_root)

            async def denied(path):
                raise PermissionError(13, "Permission denied", str(path))

            controller.frame_rate = denied
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/framerate", params={"path": "locked.mp4"})
                assert resp.status == 500
                data = await resp.json()
                assert data["error"] == "Failed to read video file"
                assert "Permission denied" in data["message"]

        run_async(do_test())


# =============================================================================
# Passthrough Routes Tests
# =============================================================================


class TestStreamRoutes:
    """Tests for /stream/{name} and /ndi/stream/{name}."""

    def test_passthrough_body(self, media_root):
        def emit_and_end(proc):
            proc.feed(b"\x47TSDATA")
            proc.exit(0)

        spawner = FakeSpawner(emit_and_end)

        async def do_test():
            controller = make_controller(media_root, spawner=spawner)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/stream/STUDIO-PC%20(Cam%201)")
                assert resp.status == 200
                assert resp.headers["Content-Type"] == "video/mp2t"
                assert resp.headers["Cache-Control"] == "no-cache"
                assert await resp.read() == b"\x47TSDATA"

            argv = spawner.calls[0]
            assert argv[argv.index("-i") + 1] == "STUDIO-PC (Cam 1)"
            assert "mpegts" in argv

        run_async(do_test())

    def test_passthrough_start_failure(self, media_root):
        async def do_test():
            controller = make_controller(media_root, spawner=failing_start())
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/ndi/stream/Cam")
                assert resp.status == 501
                data = await resp.json()
                assert data["streamName"] == "Cam"
                assert data["error"]
                assert data["solution"]
                assert any("Cam" in step for step in data["instructions"])
                assert "alternative" in data
            assert controller.manager.active_count == 0

        run_async(do_test())

    def test_client_disconnect_stops_capture(self, media_root):
        spawner = streaming(b"\x47" * 188)

        async def do_test():
            controller = make_controller(media_root, spawner=spawner)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                resp = await client.get("/stream/Cam")
                assert resp.status == 200
                assert await resp.content.readexactly(188) == b"\x47" * 188
                resp.close()

                # The server notices the disconnect on a later write
                proc = spawner.last
                for _ in range(50):
                    if proc.returncode is not None:
                        break
                    proc.feed(b"\x47" * 188)
                    await asyncio.sleep(0.05)
                assert proc.terminate_calls == 1
                assert controller.manager.active_count == 0

        run_async(do_test())


# =============================================================================
# WebSocket Routes Tests
# =============================================================================


class TestWebSocketRoutes:
    """Tests for /stream/ws and /ndi/ws."""

    def test_connect_and_receive_frames(self, media_root):
        spawner = streaming(make_jpeg(b"first"))

        async def do_test():
            controller = make_controller(media_root, spawner=spawner)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                ws = await client.ws_connect("/stream/ws")
                await ws.send_json({"type": "connect", "streamName": "STUDIO-PC (Cam 1)"})

                connected = await ws.receive_json(timeout=2)
                assert connected == {
                    "type": "connected",
                    "streamName": "STUDIO-PC (Cam 1)",
                    "method": "directCapture",
                    "methodLabel": "Direct NDI",
                }

                frame = await ws.receive_json(timeout=2)
                assert frame["type"] == "frame"
                assert frame["format"] == "jpeg"
                assert base64.b64decode(frame["data"]) == make_jpeg(b"first")

                await ws.send_json({"type": "disconnect"})
                await ws.close()

            assert spawner.last.terminate_calls == 1

        run_async(do_test())

    def test_bridge_method_reported(self, media_root):
        async def do_test():
            controller = make_controller(
                media_root,
                prober=FakeProber(BridgeDevice("OBS Virtual Camera", "dshow")),
            )
            async with TestClient(TestServer(create_test_app(controller))) as client:
                ws = await client.ws_connect("/ndi/ws")
                await ws.send_json({"type": "connect", "streamName": "Cam"})
                connected = await ws.receive_json(timeout=2)
                assert connected["method"] == "bridgeCapture"
                assert connected["methodLabel"] == "OBS Virtual Camera"
                await ws.close()

        run_async(do_test())

    def test_start_failure_reported(self, media_root):
        async def do_test():
            controller = make_controller(media_root, spawner=failing_start())
            async with TestClient(TestServer(create_test_app(controller))) as client:
                ws = await client.ws_connect("/stream/ws")
                await ws.send_json({"type": "connect", "streamName": "Cam"})

                error = await ws.receive_json(timeout=2)
                assert error["type"] == "error"
                assert error["message"]
                assert error["solution"]
                assert any("Cam" in step for step in error["instructions"])
                await ws.close()

        run_async(do_test())

    def test_stream_end_reported(self, media_root):
        spawner = streaming()

        async def do_test():
            controller = make_controller(media_root, spawner=spawner)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                ws = await client.ws_connect("/stream/ws")
                await ws.send_json({"type": "connect", "streamName": "Cam"})
                assert (await ws.receive_json(timeout=2))["type"] == "connected"
                assert (await ws.receive_json(timeout=2))["type"] == "frame"

                spawner.last.feed_stderr("Connection timed out")
                spawner.last.exit(1)

                error = await ws.receive_json(timeout=2)
                assert error["type"] == "error"
                assert "exited with code 1" in error["message"]
                await ws.close()

        run_async(do_test())

    def test_bad_messages_keep_socket_open(self, media_root):
        async def do_test():
            controller = make_controller(media_root)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                ws = await client.ws_connect("/stream/ws")

                await ws.send_str("{not json")
                assert (await ws.receive_json(timeout=2))["message"] == "Invalid JSON message"

                await ws.send_json(["connect"])
                assert (await ws.receive_json(timeout=2))["type"] == "error"

                await ws.send_json({"type": "subscribe"})
                assert "Unknown message type" in (await ws.receive_json(timeout=2))["message"]

                await ws.send_json({"type": "connect"})
                assert (await ws.receive_json(timeout=2))["message"] == "streamName is required"

                await ws.send_json({"type": "disconnect"})
                await ws.close()
                assert ws.closed

        run_async(do_test())

    def test_second_connect_switches_stream(self, media_root):
        spawner = streaming()

        async def do_test():
            controller = make_controller(media_root, spawner=spawner)
            async with TestClient(TestServer(create_test_app(controller))) as client:
                ws = await client.ws_connect("/stream/ws")
                await ws.send_json({"type": "connect", "streamName": "A"})
                assert (await ws.receive_json(timeout=2))["streamName"] == "A"

                await ws.send_json({"type": "connect", "streamName": "B"})
                while True:
                    msg = await ws.receive(timeout=2)
                    assert msg.type == WSMsgType.TEXT
                    if msg.json()["type"] == "connected":
                        assert msg.json()["streamName"] == "B"
                        break

                assert spawner.processes[0].terminate_calls == 1
                assert controller.manager.active_count == 1
                await ws.close()

        run_async(do_test())

    def test_disconnect_cancels_pending_connect(self, media_root):
        # Processes never write, so the connect stays pending until first_data_timeout
        spawner = FakeSpawner()

        async def do_test():
            controller = make_controller(media_root, spawner=spawner)
            loop = asyncio.get_running_loop()
            async with TestClient(TestServer(create_test_app(controller))) as client:
                ws = await client.ws_connect("/stream/ws")
                await ws.send_json({"type": "connect", "streamName": "Cam"})
                for _ in range(40):
                    if spawner.processes:
                        break
                    await asyncio.sleep(0.05)
                assert spawner.processes

                started = loop.time()
                await ws.send_json({"type": "disconnect"})
                for _ in range(40):
                    if spawner.last.terminate_calls:
                        break
                    await asyncio.sleep(0.05)

                assert spawner.last.terminate_calls == 1
                assert loop.time() - started < 1.0
                assert controller.manager.active_count == 0
                await ws.close()

        run_async(do_test())
