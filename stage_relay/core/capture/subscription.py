"""Per-subscriber delivery queue for a capture session."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from stage_relay.core.frames import Chunk, Frame
from stage_relay.core.logging_utils import LoggerLike, ensure_structured_logger

from .errors import CaptureError

if TYPE_CHECKING:
    from .session import CaptureSession

Payload = Union[Frame, Chunk]


class EventKind(str, Enum):
    DATA = "data"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class SessionEvent:
    kind: EventKind
    payload: Optional[Payload] = None
    error: Optional[CaptureError] = None
    message: str = ""


class Subscription:
    """One consumer's view of a session.

    Data items are queued up to ``maxsize``; when the queue is full the
    oldest item is dropped so a slow consumer never holds up the session.
    The terminal event (error or close) is always delivered, after every
    item queued before it.

    Iterate with ``async for item in subscription``. Iteration stops after a
    close and raises the CaptureError after an error.
    """

    _ids = itertools.count(1)

    def __init__(self, session: "CaptureSession", *, maxsize: int = 30, logger: LoggerLike = None) -> None:
        self.id = next(self._ids)
        self.session = session
        self.maxsize = max(1, maxsize)
        self.logger = ensure_structured_logger(logger, fallback_name="Subscription")
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue(self.maxsize)
        self._terminal: Optional[SessionEvent] = None
        self._terminal_seen = False
        self.delivered = 0
        self.dropped = 0

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, key={self.key!r})"

    @property
    def key(self) -> str:
        return self.session.key

    @property
    def source(self) -> str:
        return self.session.source

    @property
    def strategy(self):
        return self.session.strategy

    @property
    def closed(self) -> bool:
        return self._terminal is not None

    @property
    def close_message(self) -> str:
        return self._terminal.message if self._terminal else ""

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _enqueue(self, event: SessionEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 100 == 0:
                    self.logger.debug("Subscriber %d is behind on %s, %d item(s) dropped", self.id, self.key, self.dropped)

    def publish(self, payload: Payload) -> None:
        if self._terminal is not None:
            return
        self._enqueue(SessionEvent(EventKind.DATA, payload=payload))

    def fail(self, error: CaptureError) -> None:
        if self._terminal is not None:
            return
        self._terminal = SessionEvent(EventKind.ERROR, error=error, message=str(error))
        self._enqueue(self._terminal)

    def close(self, message: str = "Stream closed") -> None:
        if self._terminal is not None:
            return
        self._terminal = SessionEvent(EventKind.CLOSED, message=message)
        self._enqueue(self._terminal)

    async def next_event(self) -> SessionEvent:
        if self._terminal_seen and self._queue.empty():
            return self._terminal
        event = await self._queue.get()
        if event.kind is EventKind.DATA:
            self.delivered += 1
        else:
            self._terminal_seen = True
        return event

    async def get(self) -> Optional[Payload]:
        """Next data item; None once closed. Raises the session's CaptureError."""
        event = await self.next_event()
        if event.kind is EventKind.ERROR:
            raise event.error
        if event.kind is EventKind.CLOSED:
            return None
        return event.payload

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Payload:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


__all__ = ["EventKind", "SessionEvent", "Subscription"]
