"""
ISOBMFF (MP4) header parsing for frame-rate detection.

Only the boxes needed to derive a frame rate are read:

    moov
      mvhd                movie timescale / duration
      trak
        mdia
          hdlr            handler type ('vide' marks a video track)
          mdhd            track timescale / duration
          minf
            stbl
              stsz        sample count
              stts        time-to-sample runs

Every read is bounds-checked against the end of the enclosing box. A box
with a zero size, a size smaller than its own header, or a size running past
its parent stops the walk of that parent only; the remaining strategies are
still tried with whatever was collected.
"""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

MIN_FPS = 1
MAX_FPS = 120

BOX_HEADER_SIZE = 8
LARGE_BOX_HEADER_SIZE = 16

VIDEO_HANDLER = b"vide"

_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")


@dataclass(frozen=True)
class Box:
    """Location of one box inside a buffer."""

    type: bytes
    start: int
    payload_start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class TrackMetadata:
    is_video: bool = False
    timescale: Optional[int] = None
    duration: Optional[int] = None
    sample_count: Optional[int] = None
    stts_entries: List[Tuple[int, int]] = field(default_factory=list)

    def stts_frame_rate(self) -> Optional[float]:
        """sum(count * timescale) / sum(count * delta) over all stts runs."""
        if not self.timescale or not self.stts_entries:
            return None
        total_samples = sum(count for count, _ in self.stts_entries)
        total_delta = sum(count * delta for count, delta in self.stts_entries)
        if total_samples <= 0 or total_delta <= 0:
            return None
        return (total_samples * self.timescale) / total_delta

    def duration_frame_rate(self) -> Optional[float]:
        return _samples_over_duration(self.sample_count, self.duration, self.timescale)


@dataclass
class ContainerMetadata:
    movie_timescale: Optional[int] = None
    movie_duration: Optional[int] = None
    tracks: List[TrackMetadata] = field(default_factory=list)
    has_movie_box: bool = False

    @property
    def video_track(self) -> Optional[TrackMetadata]:
        for track in self.tracks:
            if track.is_video:
                return track
        return None

    @property
    def track_timescale(self) -> Optional[int]:
        track = self.video_track
        return track.timescale if track else None

    @property
    def track_duration(self) -> Optional[int]:
        track = self.video_track
        return track.duration if track else None

    @property
    def sample_count(self) -> Optional[int]:
        track = self.video_track
        return track.sample_count if track else None

    @property
    def stts_entries(self) -> List[Tuple[int, int]]:
        track = self.video_track
        return list(track.stts_entries) if track else []


def _read_u32(buf: bytes, offset: int, end: int) -> Optional[int]:
    if offset < 0 or offset + 4 > end:
        return None
    return _U32.unpack_from(buf, offset)[0]


def _read_u64(buf: bytes, offset: int, end: int) -> Optional[int]:
    if offset < 0 or offset + 8 > end:
        return None
    return _U64.unpack_from(buf, offset)[0]


def _read_u8(buf: bytes, offset: int, end: int) -> Optional[int]:
    if offset < 0 or offset + 1 > end:
        return None
    return buf[offset]


def _samples_over_duration(
    sample_count: Optional[int],
    duration: Optional[int],
    timescale: Optional[int],
) -> Optional[float]:
    if not sample_count or not duration or not timescale:
        return None
    seconds = duration / timescale
    if seconds <= 0:
        return None
    return sample_count / seconds


def iter_boxes(buf: bytes, start: int = 0, end: Optional[int] = None) -> Iterator[Box]:
    """Yield the boxes laid out back to back in ``buf[start:end]``.

    Stops at the first header that cannot be trusted.
    """
    end = len(buf) if end is None else min(end, len(buf))
    offset = start
    while offset + BOX_HEADER_SIZE <= end:
        size = _U32.unpack_from(buf, offset)[0]
        box_type = bytes(buf[offset + 4:offset + 8])
        header = BOX_HEADER_SIZE
        if size == 1:
            large = _read_u64(buf, offset + 8, end)
            if large is None:
                return
            size = large
            header = LARGE_BOX_HEADER_SIZE
        if size == 0 or size < header or size > end - offset:
            return
        yield Box(box_type, offset, offset + header, offset + size)
        offset += size


def find_box(buf: bytes, box_type: bytes, start: int = 0, end: Optional[int] = None) -> Optional[Box]:
    for box in iter_boxes(buf, start, end):
        if box.type == box_type:
            return box
    return None


def _read_header_times(buf: bytes, box: Box) -> Tuple[Optional[int], Optional[int]]:
    """Timescale and duration of an mvhd/mdhd box.

    Both boxes share this layout after the 8-byte header:

        version(1) flags(3)
        v0: creation(4) modification(4) timescale(4) duration(4)
        v1: creation(8) modification(8) timescale(4) duration(8)
    """
    version = _read_u8(buf, box.start + 8, box.end)
    if version is None:
        return None, None
    if version == 1:
        timescale = _read_u32(buf, box.start + 28, box.end)
        duration = _read_u64(buf, box.start + 32, box.end)
    else:
        timescale = _read_u32(buf, box.start + 20, box.end)
        duration = _read_u32(buf, box.start + 24, box.end)
    return timescale, duration


def _read_handler_type(buf: bytes, box: Box) -> Optional[bytes]:
    # version/flags(4) pre_defined(4) handler_type(4)
    offset = box.start + 16
    if offset + 4 > box.end:
        return None
    return bytes(buf[offset:offset + 4])


def _read_sample_count(buf: bytes, box: Box) -> Optional[int]:
    # stsz: version/flags(4) sample_size(4) sample_count(4)
    if _read_u8(buf, box.start + 8, box.end) != 0:
        return None
    return _read_u32(buf, box.start + 16, box.end)


def _read_stts_entries(buf: bytes, box: Box) -> List[Tuple[int, int]]:
    # stts: version/flags(4) entry_count(4) {sample_count(4) sample_delta(4)}*
    if _read_u8(buf, box.start + 8, box.end) != 0:
        return []
    entry_count = _read_u32(buf, box.start + 12, box.end)
    if entry_count is None:
        return []
    entries_start = box.start + 16
    if entries_start + entry_count * 8 > box.end:
        return []
    return [
        (_U32.unpack_from(buf, pos)[0], _U32.unpack_from(buf, pos + 4)[0])
        for pos in range(entries_start, entries_start + entry_count * 8, 8)
    ]


def _parse_sample_table(buf: bytes, stbl: Box, track: TrackMetadata) -> None:
    for box in iter_boxes(buf, stbl.payload_start, stbl.end):
        if box.type == b"stsz":
            count = _read_sample_count(buf, box)
            if count is not None:
                track.sample_count = count
        elif box.type == b"stts":
            entries = _read_stts_entries(buf, box)
            if entries:
                track.stts_entries = entries


def _parse_media(buf: bytes, mdia: Box, track: TrackMetadata) -> None:
    for box in iter_boxes(buf, mdia.payload_start, mdia.end):
        if box.type == b"hdlr":
            if _read_handler_type(buf, box) == VIDEO_HANDLER:
                track.is_video = True
        elif box.type == b"mdhd":
            timescale, duration = _read_header_times(buf, box)
            if timescale is not None:
                track.timescale = timescale
            if duration is not None:
                track.duration = duration
        elif box.type == b"minf":
            stbl = find_box(buf, b"stbl", box.payload_start, box.end)
            if stbl is not None:
                _parse_sample_table(buf, stbl, track)


def _parse_track(buf: bytes, trak: Box) -> TrackMetadata:
    track = TrackMetadata()
    for box in iter_boxes(buf, trak.payload_start, trak.end):
        if box.type == b"mdia":
            _parse_media(buf, box, track)
    return track


def parse_movie_box(buf: bytes, moov: Box, metadata: Optional[ContainerMetadata] = None) -> ContainerMetadata:
    metadata = metadata or ContainerMetadata()
    metadata.has_movie_box = True
    for box in iter_boxes(buf, moov.payload_start, moov.end):
        if box.type == b"mvhd":
            metadata.movie_timescale, metadata.movie_duration = _read_header_times(buf, box)
        elif box.type == b"trak":
            metadata.tracks.append(_parse_track(buf, box))
    return metadata


def parse_container_metadata(buf: bytes) -> ContainerMetadata:
    """Collect header metadata from the first ``moov`` box in ``buf``."""
    moov = find_box(buf, b"moov")
    if moov is None:
        return ContainerMetadata()
    return parse_movie_box(buf, moov)


def _accept(fps: Optional[float]) -> Optional[int]:
    if fps is None or not (0 < fps <= MAX_FPS):
        return None
    rounded = math.floor(fps + 0.5)
    if rounded < MIN_FPS:
        return None
    return rounded


def frame_rate_from_metadata(metadata: ContainerMetadata) -> Optional[int]:
    """Apply the frame-rate strategies in order of precision."""
    for track in metadata.tracks:
        if not track.is_video or not track.timescale:
            continue
        fps = _accept(track.stts_frame_rate())
        if fps is not None:
            return fps
        fps = _accept(track.duration_frame_rate())
        if fps is not None:
            return fps

    fallback = next((t for t in metadata.tracks if t.sample_count), None)
    if fallback is None:
        return None
    if fallback.timescale and fallback.duration:
        return _accept(fallback.duration_frame_rate())
    return _accept(_samples_over_duration(
        fallback.sample_count,
        metadata.movie_duration,
        metadata.movie_timescale,
    ))


def parse_frame_rate(buf: bytes) -> Optional[int]:
    """Frame rate of the MP4 whose leading bytes are ``buf``, or None.

    Never raises for malformed input.
    """
    return frame_rate_from_metadata(parse_container_metadata(buf))


__all__ = [
    "Box",
    "ContainerMetadata",
    "TrackMetadata",
    "find_box",
    "frame_rate_from_metadata",
    "iter_boxes",
    "parse_container_metadata",
    "parse_frame_rate",
    "parse_movie_box",
]
