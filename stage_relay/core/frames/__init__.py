"""JPEG frame reassembly for capture byte streams."""

from .reassembler import Chunk, Frame, FrameReassembler

__all__ = ["Chunk", "Frame", "FrameReassembler"]
