"""Exceptions raised by the capture layer."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class RelayError(Exception):
    """Base class for relay failures."""


class CaptureError(RelayError):
    """A capture session could not deliver data."""

    def __init__(self, message: str, *, source: str = "", session_key: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.source = source
        self.session_key = session_key


def bridge_setup_instructions(source: str) -> tuple[str, ...]:
    return (
        "1. Install OBS Studio (https://obsproject.com/)",
        "2. In OBS: Sources > Add > NDI Source",
        f'3. Select your NDI stream: "{source}"',
        "4. Tools > Start Virtual Camera",
        "5. Try again - the relay detects OBS Virtual Camera automatically",
    )


def bridge_running_instructions(device: str) -> tuple[str, ...]:
    return (
        "1. Make sure OBS Studio is running",
        "2. Add your NDI source to OBS",
        "3. Start OBS Virtual Camera (Tools > Start Virtual Camera)",
        f"4. Verify the camera name matches: {device}",
    )


class CaptureStartFailure(CaptureError):
    """The capture process never produced data.

    Carries the remediation steps shown to the user.
    """

    def __init__(
        self,
        message: str,
        *,
        source: str = "",
        session_key: str = "",
        error: str = "Capture could not be started",
        solution: str = "Use OBS Virtual Camera as a bridge",
        instructions: Optional[Sequence[str]] = None,
        alternative: Optional[str] = "Or install an ffmpeg build with NDI support (libndi_newtek)",
        stderr_tail: str = "",
    ) -> None:
        super().__init__(message, source=source, session_key=session_key)
        self.error = error
        self.solution = solution
        self.instructions = tuple(instructions) if instructions is not None else bridge_setup_instructions(source)
        self.alternative = alternative
        self.stderr_tail = stderr_tail

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.error,
            "message": self.message,
            "streamName": self.source,
            "solution": self.solution,
            "instructions": list(self.instructions),
        }
        if self.alternative:
            payload["alternative"] = self.alternative
        return payload


class ProcessCrash(CaptureError):
    """The capture process exited with a nonzero status while running."""

    def __init__(
        self,
        returncode: Optional[int],
        *,
        source: str = "",
        session_key: str = "",
        stderr_tail: str = "",
    ) -> None:
        message = f"Capture process exited with code {returncode}"
        if stderr_tail:
            message = f"{message}: {stderr_tail.splitlines()[-1]}"
        super().__init__(message, source=source, session_key=session_key)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class DecodeFailure(CaptureError):
    """The byte stream stopped yielding frames."""


class DeviceProbeFailure(RelayError):
    """Device enumeration failed; capture falls back to direct input."""


__all__ = [
    "CaptureError",
    "CaptureStartFailure",
    "DecodeFailure",
    "DeviceProbeFailure",
    "ProcessCrash",
    "RelayError",
    "bridge_running_instructions",
    "bridge_setup_instructions",
]
