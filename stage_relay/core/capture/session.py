r"""
One supervised capture process shared by every subscriber of a key.

Lifecycle::

    Probing --(bridge | direct)--> Running --> Terminated   (stopped, or exit 0)
                                           \-> Error        (nonzero exit, decode failure)
    Probing --> Error                                      (start failure)

A session is single-use: once it reaches Terminated or Error it is dropped
from the manager and the next attach builds a new one, probing again.
"""

from __future__ import annotations

import asyncio
import collections
from enum import Enum
from typing import Awaitable, Callable, Deque, Optional, Set

from stage_relay.core.asyncio_utils import cancel_and_wait, create_logged_task
from stage_relay.core.frames import Chunk, Frame, FrameReassembler
from stage_relay.core.logging_utils import LoggerLike, ensure_structured_logger
from stage_relay.core.settings import CaptureSettings

from .commands import CaptureStrategy, OutputFormat, build_capture_command
from .devices import BridgeDevice, BridgeDeviceProber
from .errors import (
    CaptureError,
    CaptureStartFailure,
    DecodeFailure,
    DeviceProbeFailure,
    ProcessCrash,
    bridge_running_instructions,
    bridge_setup_instructions,
)
from .process import CaptureProcess, ProcessSpawner, spawn_capture_process
from .subscription import Subscription

STDERR_TAIL_LINES = 20

SessionCallback = Callable[["CaptureSession"], Awaitable[None]]


class SessionState(str, Enum):
    PROBING = "probing"
    RUNNING = "running"
    ERROR = "error"
    TERMINATED = "terminated"


class CaptureSession:
    def __init__(
        self,
        source: str,
        output: OutputFormat,
        settings: CaptureSettings,
        *,
        key: Optional[str] = None,
        spawner: Optional[ProcessSpawner] = None,
        prober: Optional[BridgeDeviceProber] = None,
        on_finished: Optional[SessionCallback] = None,
        logger: LoggerLike = None,
    ) -> None:
        self.source = source
        self.output = output
        self.settings = settings
        self.key = key or f"{output.value}:{source}"
        self.logger = ensure_structured_logger(logger, fallback_name="CaptureSession")

        self._spawner = spawner or spawn_capture_process
        self._prober = prober
        self._on_finished = on_finished

        self.state = SessionState.PROBING
        self.strategy: Optional[CaptureStrategy] = None
        self.device: Optional[BridgeDevice] = None
        self.process: Optional[CaptureProcess] = None
        self.argv: list[str] = []
        self.error: Optional[CaptureError] = None
        self.subscribers: Set[Subscription] = set()
        self.stderr_tail: Deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)

        self.bytes_read = 0
        self.items_published = 0
        self.terminate_count = 0

        self._running: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        # Waiters may all have gone by the time the outcome is known
        self._running.add_done_callback(lambda fut: fut.cancelled() or fut.exception())
        self._finished = asyncio.Event()
        self._stop_requested = False
        self._terminated = False
        self._start_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None

        self.reassembler: Optional[FrameReassembler] = None
        if output is OutputFormat.JPEG_FRAMES:
            self.reassembler = FrameReassembler(
                self.key,
                on_frame=self._publish,
                max_buffer_bytes=settings.max_frame_bytes,
                logger=self.logger.getChild("frames"),
            )

    def __repr__(self) -> str:
        return f"CaptureSession(key={self.key!r}, state={self.state.value}, subscribers={self.subscriber_count})"

    @property
    def subscriber_count(self) -> int:
        return len(self.subscribers)

    @property
    def is_finished(self) -> bool:
        return self._finished.is_set()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    def add_subscriber(self, subscription: Subscription) -> None:
        self.subscribers.add(subscription)
        if self.state is SessionState.ERROR and self.error is not None:
            subscription.fail(self.error)

    def remove_subscriber(self, subscription: Subscription) -> None:
        self.subscribers.discard(subscription)

    def begin(self) -> None:
        if self._start_task is None:
            self._start_task = create_logged_task(
                self._start(), logger=self.logger, context=f"start {self.key}"
            )

    async def wait_running(self) -> None:
        """Return once data flows; raises the start failure otherwise."""
        await asyncio.shield(self._running)

    async def wait_finished(self) -> None:
        await self._finished.wait()

    def snapshot(self) -> dict:
        return {
            "key": self.key,
            "source": self.source,
            "output": self.output.value,
            "state": self.state.value,
            "strategy": self.strategy.value if self.strategy else None,
            "device": self.device.name if self.device else None,
            "pid": self.pid,
            "subscribers": self.subscriber_count,
            "bytesRead": self.bytes_read,
            "itemsPublished": self.items_published,
        }

    async def _choose_strategy(self) -> None:
        if self._prober is not None:
            try:
                self.device = await self._prober.probe()
            except DeviceProbeFailure as exc:
                self.logger.warning("Bridge device probe failed for %s, trying direct capture: %s", self.source, exc)
                self.device = None
        self.strategy = CaptureStrategy.BRIDGE if self.device else CaptureStrategy.DIRECT
        self.logger.info("Using %s for %s", self.strategy.value, self.key)

    def _start_failure(self, message: str) -> CaptureStartFailure:
        stderr = "\n".join(self.stderr_tail)
        if self.strategy is CaptureStrategy.BRIDGE and self.device is not None:
            return CaptureStartFailure(
                message,
                source=self.source,
                session_key=self.key,
                error="Failed to stream from OBS Virtual Camera",
                solution="Check that the OBS Virtual Camera is running",
                instructions=bridge_running_instructions(self.device.name),
                alternative=None,
                stderr_tail=stderr,
            )
        return CaptureStartFailure(
            message,
            source=self.source,
            session_key=self.key,
            error="NDI streaming requires OBS Virtual Camera or FFmpeg with NDI support",
            instructions=bridge_setup_instructions(self.source),
            stderr_tail=stderr,
        )

    async def _start(self) -> None:
        await self._choose_strategy()
        if self._stop_requested:
            return

        self.argv = build_capture_command(self.source, self.strategy, self.output, self.settings, self.device)
        self.logger.debug("Spawning: %s", " ".join(self.argv))
        try:
            self.process = await self._spawner(self.argv)
        except OSError as exc:
            self.logger.error("Could not start %s: %s", self.settings.ffmpeg_path, exc)
            self._fail(self._start_failure(f"Failed to start ffmpeg: {exc}"))
            await self._finish()
            return

        self.logger.info("Capture process %s started for %s", self.pid, self.key)
        self._reader_task = create_logged_task(self._read_stdout(), logger=self.logger, context=f"read {self.key}")
        self._stderr_task = create_logged_task(self._read_stderr(), logger=self.logger, context=f"stderr {self.key}")
        self._monitor_task = create_logged_task(self._monitor(), logger=self.logger, context=f"monitor {self.key}")

        try:
            await asyncio.wait_for(asyncio.shield(self._running), timeout=self.settings.first_data_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("No data from %s within %.1fs", self.key, self.settings.first_data_timeout)
            self._fail(self._start_failure(
                f"No video received from '{self.source}' within {self.settings.first_data_timeout:g}s"
            ))
            await self._terminate_process()
        except CaptureError:
            # Reported by the monitor
            pass

    async def _read_stdout(self) -> None:
        stdout = self.process.stdout
        if stdout is None:
            return
        while True:
            data = await stdout.read(self.settings.read_chunk_size)
            if not data:
                break
            self.bytes_read += len(data)
            if not self._running.done():
                self.state = SessionState.RUNNING
                self._running.set_result(None)
                self.logger.info("%s is running (%s)", self.key, self.strategy.value)

            if self.reassembler is None:
                self._publish(Chunk(data, self.key))
                continue

            self.reassembler.consume(data)
            if self.reassembler.consecutive_overflows >= self.settings.max_decode_overflows:
                self._fail(DecodeFailure(
                    f"Stream from '{self.source}' is not producing decodable frames",
                    source=self.source,
                    session_key=self.key,
                ))
                await self._terminate_process()
                break

    async def _read_stderr(self) -> None:
        stderr = self.process.stderr
        if stderr is None:
            return
        while True:
            line = await stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                self.stderr_tail.append(text)
                self.logger.warning("ffmpeg stderr (%s): %s", self.key, text)

    async def _monitor(self) -> None:
        returncode = await self.process.wait()
        # Let the readers drain what the process wrote before exiting
        await asyncio.gather(
            *(t for t in (self._reader_task, self._stderr_task) if t is not None),
            return_exceptions=True,
        )

        if self._stop_requested:
            self._close("Stream stopped")
        elif not self._running.done():
            self._fail(self._start_failure(
                f"Capture process exited with code {returncode} before producing video"
            ))
        elif returncode == 0:
            self._close("Stream ended")
        else:
            self.logger.error("Capture process for %s crashed with exit code %s", self.key, returncode)
            self._fail(ProcessCrash(
                returncode,
                source=self.source,
                session_key=self.key,
                stderr_tail="\n".join(self.stderr_tail),
            ))
        await self._finish()

    def _publish(self, item) -> None:
        self.items_published += 1
        for subscription in list(self.subscribers):
            subscription.publish(item)

    def _fail(self, error: CaptureError) -> None:
        if self.state in (SessionState.ERROR, SessionState.TERMINATED):
            return
        self.state = SessionState.ERROR
        self.error = error
        if not self._running.done():
            self._running.set_exception(error)
        self.logger.error("%s failed: %s", self.key, error)
        for subscription in list(self.subscribers):
            subscription.fail(error)

    def _close(self, message: str) -> None:
        if self.state in (SessionState.ERROR, SessionState.TERMINATED):
            return
        self.state = SessionState.TERMINATED
        if not self._running.done():
            self._running.set_exception(CaptureError(message, source=self.source, session_key=self.key))
        for subscription in list(self.subscribers):
            subscription.close(message)

    async def _finish(self) -> None:
        if self._finished.is_set():
            return
        self._finished.set()
        self.logger.info("Session %s finished (%s)", self.key, self.state.value)
        if self._on_finished is not None:
            await self._on_finished(self)

    async def _terminate_process(self) -> None:
        proc = self.process
        if proc is None or proc.returncode is not None or self._terminated:
            return
        self._terminated = True
        self.terminate_count += 1
        self.logger.info("Terminating capture process %s for %s", proc.pid, self.key)
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.settings.stop_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Capture process %s ignored SIGTERM, killing", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    async def stop(self) -> None:
        """Terminate the process and close every subscriber. Idempotent."""
        if self._stop_requested:
            await self._finished.wait()
            return
        self._stop_requested = True

        if self.process is None:
            # Still probing, or the spawn itself failed
            await cancel_and_wait(self._start_task)
            self._close("Stream stopped")
            await self._finish()
            return

        await self._terminate_process()
        if self._monitor_task is not None:
            await asyncio.gather(self._monitor_task, return_exceptions=True)
        await cancel_and_wait(self._start_task)
        await self._finish()


__all__ = ["CaptureSession", "SessionState"]
