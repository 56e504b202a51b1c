"""Registry of capture sessions, shared by key and reference counted."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from stage_relay.core.logging_utils import LoggerLike, ensure_structured_logger
from stage_relay.core.settings import CaptureSettings

from .commands import OutputFormat
from .devices import BridgeDeviceProber
from .errors import RelayError
from .process import ProcessSpawner
from .session import CaptureSession, SessionState
from .subscription import Subscription


def session_key(source: str, output: OutputFormat) -> str:
    return f"{output.value}:{source}"


class CaptureSessionManager:
    """Owns every running capture process.

    There is at most one session (and so one process) per
    ``(output, source)`` key. Each attach adds a subscriber to the key's
    session, creating and starting it first if needed; the process is
    terminated when the last subscriber detaches.

    Usage:
        manager = CaptureSessionManager(settings.capture)
        sub = await manager.attach("STUDIO (Cam 1)")
        async for frame in sub:
            ...
        await manager.detach(sub)
    """

    def __init__(
        self,
        settings: Optional[CaptureSettings] = None,
        *,
        spawner: Optional[ProcessSpawner] = None,
        prober: Optional[BridgeDeviceProber] = None,
        probe_bridge: bool = True,
        logger: LoggerLike = None,
    ) -> None:
        self.settings = settings or CaptureSettings()
        self.logger = ensure_structured_logger(logger, fallback_name="SessionManager")
        self._spawner = spawner
        if prober is None and probe_bridge:
            prober = BridgeDeviceProber(
                ffmpeg_path=self.settings.ffmpeg_path,
                backend=self.settings.device_backend,
                bridge_names=self.settings.bridge_devices,
                timeout=self.settings.device_probe_timeout,
                logger=self.logger.getChild("probe"),
            )
        self._prober = prober
        self._sessions: Dict[str, CaptureSession] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get_session(self, key: str) -> Optional[CaptureSession]:
        return self._sessions.get(key)

    def sessions(self) -> List[dict]:
        """Status snapshot of the live sessions."""
        return [session.snapshot() for session in list(self._sessions.values())]

    async def attach(self, source: str, output: OutputFormat = OutputFormat.JPEG_FRAMES) -> Subscription:
        """Subscribe to ``source``, starting its capture if nothing is running.

        Returns once the session is delivering data. Raises
        CaptureStartFailure (or CaptureError if the session was stopped
        first); the subscription is already detached in that case.
        """
        source = (source or "").strip()
        if not source:
            raise ValueError("source name is required")

        key = session_key(source, output)
        async with self._lock:
            if self._closed:
                raise RelayError("capture manager is shut down")
            session = self._sessions.get(key)
            # A failed session may still be tearing down its process
            created = session is None or session.is_finished or session.state in (
                SessionState.ERROR, SessionState.TERMINATED,
            )
            if created:
                session = CaptureSession(
                    source,
                    output,
                    self.settings,
                    key=key,
                    spawner=self._spawner,
                    prober=self._prober,
                    on_finished=self._forget,
                    logger=self.logger.getChild(output.value),
                )
                self._sessions[key] = session
            subscription = Subscription(
                session,
                maxsize=self.settings.subscriber_queue_size,
                logger=self.logger,
            )
            session.add_subscriber(subscription)
            if created:
                session.begin()
            self.logger.info(
                "Attached subscriber %d to %s (%d total)", subscription.id, key, session.subscriber_count
            )

        try:
            await session.wait_running()
        except BaseException:
            await asyncio.shield(self.detach(subscription))
            raise
        return subscription

    async def detach(self, subscription: Subscription) -> None:
        """Drop ``subscription``; stops the session when it was the last one."""
        session = subscription.session
        async with self._lock:
            if subscription not in session.subscribers:
                return
            session.remove_subscriber(subscription)
            subscription.close("Detached")
            remaining = session.subscriber_count
            if remaining == 0 and self._sessions.get(session.key) is session:
                del self._sessions[session.key]
            self.logger.info("Detached subscriber %d from %s (%d left)", subscription.id, session.key, remaining)

        if remaining == 0:
            await session.stop()

    async def _forget(self, session: CaptureSession) -> None:
        async with self._lock:
            if self._sessions.get(session.key) is session:
                del self._sessions[session.key]
                self.logger.debug("Removed finished session %s", session.key)

    async def shutdown(self) -> None:
        """Stop every session. Further attaches are refused."""
        async with self._lock:
            self._closed = True
            sessions = list(self._sessions.values())
            self._sessions.clear()
        if not sessions:
            return
        self.logger.info("Stopping %d capture session(s)", len(sessions))
        results = await asyncio.gather(*(s.stop() for s in sessions), return_exceptions=True)
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                self.logger.error("Error stopping %s: %s", session.key, result)


__all__ = ["CaptureSessionManager", "session_key"]
