"""ffmpeg command lines for each capture strategy and output format."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from stage_relay.core.settings import CaptureSettings

from .devices import BridgeDevice

# Tagged onto every capture command line so orphan cleanup can find them
RELAY_PROCESS_MARKER = "stage_relay_capture=1"


class CaptureStrategy(str, Enum):
    BRIDGE = "bridgeCapture"
    DIRECT = "directCapture"


class OutputFormat(str, Enum):
    JPEG_FRAMES = "jpeg"
    MPEG_TS = "mpegts"


def input_args(
    source: str,
    strategy: CaptureStrategy,
    settings: CaptureSettings,
    device: Optional[BridgeDevice] = None,
) -> List[str]:
    if strategy is CaptureStrategy.BRIDGE:
        if device is None:
            raise ValueError("bridge capture needs a device")
        return device.input_args(settings.frame_rate)
    return ["-f", "libndi_newtek", "-i", source]


def output_args(output: OutputFormat, settings: CaptureSettings) -> List[str]:
    if output is OutputFormat.JPEG_FRAMES:
        return [
            "-vf", f"fps={settings.frame_rate}",
            "-f", "image2pipe",
            "-vcodec", "mjpeg",
            "-q:v", str(settings.jpeg_quality),
        ]
    return [
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-tune", "zerolatency",
        "-c:a", "aac",
        "-f", "mpegts",
        "-flags", "low_delay",
        "-strict", "experimental",
    ]


def build_capture_command(
    source: str,
    strategy: CaptureStrategy,
    output: OutputFormat,
    settings: CaptureSettings,
    device: Optional[BridgeDevice] = None,
) -> List[str]:
    """Full argv writing ``output`` to stdout."""
    return [
        settings.ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-nostdin",
        *input_args(source, strategy, settings, device),
        *output_args(output, settings),
        "-metadata", f"comment={RELAY_PROCESS_MARKER}",
        "-",
    ]


__all__ = [
    "CaptureStrategy",
    "OutputFormat",
    "RELAY_PROCESS_MARKER",
    "build_capture_command",
]
