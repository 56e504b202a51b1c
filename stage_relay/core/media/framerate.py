"""Frame-rate detection for MP4 files on disk."""

from __future__ import annotations

import struct
from pathlib import Path
from typing import Optional, Tuple

import aiofiles

from stage_relay.core.logging_utils import LoggerLike, ensure_structured_logger

from .mp4_parser import (
    BOX_HEADER_SIZE,
    LARGE_BOX_HEADER_SIZE,
    find_box,
    frame_rate_from_metadata,
    parse_container_metadata,
    parse_movie_box,
)

DEFAULT_PREFIX_BYTES = 512 * 1024
DEFAULT_MAX_MOVIE_BOX_BYTES = 16 * 1024 * 1024

# Top-level boxes visited while seeking for moov; bounds a hostile file with
# millions of tiny boxes.
_MAX_TOP_LEVEL_BOXES = 4096


class PathOutsideRootError(ValueError):
    """Requested media path resolves outside the permitted media root."""


def resolve_media_path(media_root: Path, requested: str) -> Path:
    """Map a client-supplied path onto ``media_root``.

    Leading slashes are treated as relative to the root, so ``/assets/a.mp4``
    and ``assets/a.mp4`` name the same file. Raises PathOutsideRootError when
    the resolved path escapes the root (``..`` segments, symlinks).
    """
    root = media_root.resolve()
    candidate = (root / requested.lstrip("/\\")).resolve()
    if candidate != root and not candidate.is_relative_to(root):
        raise PathOutsideRootError(requested)
    return candidate


async def _locate_movie_box(fh, file_size: int) -> Optional[Tuple[int, int]]:
    """Seek through top-level box headers for moov; returns (offset, size)."""
    offset = 0
    for _ in range(_MAX_TOP_LEVEL_BOXES):
        if offset + BOX_HEADER_SIZE > file_size:
            return None
        await fh.seek(offset)
        header = await fh.read(LARGE_BOX_HEADER_SIZE)
        if len(header) < BOX_HEADER_SIZE:
            return None
        size, box_type = struct.unpack(">I4s", header[:BOX_HEADER_SIZE])
        if size == 1:
            if len(header) < LARGE_BOX_HEADER_SIZE:
                return None
            size = struct.unpack(">Q", header[BOX_HEADER_SIZE:LARGE_BOX_HEADER_SIZE])[0]
        elif size == 0:
            # box extends to end of file
            size = file_size - offset
        if size < BOX_HEADER_SIZE or offset + size > file_size:
            return None
        if box_type == b"moov":
            return offset, size
        offset += size
    return None


async def read_frame_rate(
    path: Path,
    *,
    prefix_bytes: int = DEFAULT_PREFIX_BYTES,
    max_movie_box_bytes: int = DEFAULT_MAX_MOVIE_BOX_BYTES,
    logger: LoggerLike = None,
) -> Optional[int]:
    """Detect the frame rate of the MP4 at ``path``.

    The leading ``prefix_bytes`` are parsed first. When they hold no moov box
    (files written without fast-start keep it after mdat) the top-level box
    headers are walked on disk and the moov box is read on its own.

    Raises OSError for I/O failures; returns None when no rate can be derived.
    """
    log = ensure_structured_logger(logger, fallback_name="FrameRate")

    async with aiofiles.open(path, "rb") as fh:
        prefix = await fh.read(prefix_bytes)
        log.debug("Read %d header bytes from %s", len(prefix), path)

        metadata = parse_container_metadata(prefix)
        if metadata.has_movie_box:
            fps = frame_rate_from_metadata(metadata)
            log.debug("Frame rate from leading moov of %s: %s", path.name, fps)
            return fps

        await fh.seek(0, 2)
        file_size = await fh.tell()
        located = await _locate_movie_box(fh, file_size)
        if located is None:
            log.debug("No moov box found in %s", path.name)
            return None

        moov_offset, moov_size = located
        if moov_size > max_movie_box_bytes:
            log.warning(
                "moov box in %s is %d bytes (limit %d), skipping",
                path.name, moov_size, max_movie_box_bytes,
            )
            return None

        await fh.seek(moov_offset)
        moov_bytes = await fh.read(moov_size)

    moov = find_box(moov_bytes, b"moov")
    if moov is None:
        return None
    fps = frame_rate_from_metadata(parse_movie_box(moov_bytes, moov))
    log.debug("Frame rate from trailing moov of %s: %s", path.name, fps)
    return fps


__all__ = [
    "PathOutsideRootError",
    "read_frame_rate",
    "resolve_media_path",
]
