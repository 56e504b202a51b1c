"""MP4 container metadata (frame rate) parsing."""

from .framerate import PathOutsideRootError, read_frame_rate, resolve_media_path
from .mp4_parser import (
    ContainerMetadata,
    TrackMetadata,
    parse_container_metadata,
    parse_frame_rate,
)

__all__ = [
    "ContainerMetadata",
    "PathOutsideRootError",
    "TrackMetadata",
    "parse_container_metadata",
    "parse_frame_rate",
    "read_frame_rate",
    "resolve_media_path",
]
