"""
Capture process supervision.

- devices: virtual-camera bridge detection
- commands: ffmpeg argv per strategy and output
- session: one supervised process and its subscribers
- manager: keyed, reference-counted session registry
"""

from .commands import CaptureStrategy, OutputFormat, build_capture_command
from .devices import BridgeDevice, BridgeDeviceProber
from .errors import (
    CaptureError,
    CaptureStartFailure,
    DecodeFailure,
    DeviceProbeFailure,
    ProcessCrash,
    RelayError,
)
from .manager import CaptureSessionManager, session_key
from .session import CaptureSession, SessionState
from .subscription import EventKind, SessionEvent, Subscription

__all__ = [
    "BridgeDevice",
    "BridgeDeviceProber",
    "CaptureError",
    "CaptureSession",
    "CaptureSessionManager",
    "CaptureStartFailure",
    "CaptureStrategy",
    "DecodeFailure",
    "DeviceProbeFailure",
    "EventKind",
    "OutputFormat",
    "ProcessCrash",
    "RelayError",
    "SessionEvent",
    "SessionState",
    "Subscription",
    "build_capture_command",
    "session_key",
]
