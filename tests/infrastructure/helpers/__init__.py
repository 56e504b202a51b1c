"""Test helpers for the relay test suite.

MP4 builders:
    box, large_box, full_box - raw ISOBMFF boxes
    mvhd, mdhd, hdlr, stsz, stts, trak, moov - the boxes read for frame rate
    reference_movie - 30 fps file in version 0 or version 1 layout

Usage:
    from tests.infrastructure.helpers import reference_movie, trak, moov
"""

from .mp4_builders import (
    box,
    ftyp,
    full_box,
    hdlr,
    large_box,
    mdat,
    mdhd,
    moov,
    mp4_file,
    mvhd,
    reference_movie,
    stsz,
    stts,
    trak,
)

__all__ = [
    "box",
    "ftyp",
    "full_box",
    "hdlr",
    "large_box",
    "mdat",
    "mdhd",
    "moov",
    "mp4_file",
    "mvhd",
    "reference_movie",
    "stsz",
    "stts",
    "trak",
]
