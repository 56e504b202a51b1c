"""
Incremental JPEG frame slicing for image2pipe/mjpeg byte streams.

ffmpeg writes concatenated JPEG images to stdout with no framing, and the
pipe hands them over in arbitrary chunk sizes. FrameReassembler keeps only
the current partial image and emits every complete ``FF D8 ... FF D9`` span
as soon as its end marker arrives.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

from stage_relay.core.logging_utils import LoggerLike, ensure_structured_logger

SOI = b"\xff\xd8"
EOI = b"\xff\xd9"
DEFAULT_MAX_BUFFER_BYTES = 8 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class Frame:
    """One complete JPEG image."""

    data: bytes
    session_key: str = ""

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class Chunk:
    """Raw bytes from a passthrough (MPEG-TS) session."""

    data: bytes
    session_key: str = ""

    def __len__(self) -> int:
        return len(self.data)


FrameCallback = Callable[[Frame], None]


class FrameReassembler:
    """Slice a raw byte stream into complete JPEG frames.

    Feed bytes with ``consume()``. Complete frames go to ``on_frame`` when a
    callback is given, otherwise they queue up until ``drain()``.
    """

    def __init__(
        self,
        session_key: str = "",
        *,
        on_frame: Optional[FrameCallback] = None,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
        logger: LoggerLike = None,
    ) -> None:
        if max_buffer_bytes < len(SOI) + len(EOI):
            raise ValueError("max_buffer_bytes too small to hold a frame")
        self.session_key = session_key
        self.max_buffer_bytes = max_buffer_bytes
        self.logger = ensure_structured_logger(logger, fallback_name="FrameReassembler")

        self._on_frame = on_frame
        self._buffer = bytearray()
        self._pending: List[Frame] = []
        # Offset into _buffer where the next EOI search starts
        self._scan_from = 0
        self._in_frame = False

        self.frames_emitted = 0
        self.bytes_discarded = 0
        self.overflow_count = 0
        self.consecutive_overflows = 0

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    def consume(self, chunk: bytes) -> int:
        """Append ``chunk`` and emit every frame it completes.

        Returns the number of frames emitted by this call.
        """
        if not chunk:
            return 0
        self._buffer += chunk
        emitted = 0

        while True:
            if not self._in_frame and not self._sync_to_start():
                break

            end = self._buffer.find(EOI, self._scan_from)
            if end < 0:
                # Keep a trailing FF so an EOI split across chunks still matches
                self._scan_from = max(len(SOI), len(self._buffer) - 1)
                break

            frame_end = end + len(EOI)
            self._emit(bytes(self._buffer[:frame_end]))
            del self._buffer[:frame_end]
            self._in_frame = False
            self._scan_from = 0
            emitted += 1

        if len(self._buffer) > self.max_buffer_bytes:
            self._overflow()

        return emitted

    def drain(self) -> List[Frame]:
        """Return and clear the frames queued since the last drain."""
        frames, self._pending = self._pending, []
        return frames

    def reset(self) -> None:
        self._buffer.clear()
        self._pending.clear()
        self._scan_from = 0
        self._in_frame = False
        self.consecutive_overflows = 0

    def _sync_to_start(self) -> bool:
        """Drop bytes ahead of the next SOI. False when none is buffered yet."""
        start = self._buffer.find(SOI)
        if start < 0:
            # A lone trailing FF may be the first half of the next SOI
            keep = 1 if self._buffer.endswith(b"\xff") else 0
            dropped = len(self._buffer) - keep
            if dropped:
                self.bytes_discarded += dropped
                del self._buffer[:dropped]
            return False
        if start:
            self.bytes_discarded += start
            del self._buffer[:start]
        self._in_frame = True
        self._scan_from = len(SOI)
        return True

    def _emit(self, data: bytes) -> None:
        frame = Frame(data=data, session_key=self.session_key)
        self.frames_emitted += 1
        self.consecutive_overflows = 0
        if self._on_frame is not None:
            self._on_frame(frame)
        else:
            self._pending.append(frame)

    def _overflow(self) -> None:
        self.overflow_count += 1
        self.consecutive_overflows += 1
        size = len(self._buffer)
        # Resync on a later SOI if the oversized span contains one
        restart = self._buffer.find(SOI, len(SOI))
        if restart > 0:
            self.bytes_discarded += restart
            del self._buffer[:restart]
            self._in_frame = False
            self._scan_from = 0
        else:
            self.bytes_discarded += size
            self._buffer.clear()
            self._in_frame = False
            self._scan_from = 0
        self.logger.warning(
            "Discarded %d buffered bytes for %s without an end marker (overflow %d)",
            size - len(self._buffer),
            self.session_key or "stream",
            self.overflow_count,
        )


__all__ = [
    "Chunk",
    "DEFAULT_MAX_BUFFER_BYTES",
    "EOI",
    "Frame",
    "FrameReassembler",
    "SOI",
]
