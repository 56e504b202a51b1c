"""
Virtual-camera bridge detection.

When OBS (or any virtual camera) is re-publishing an NDI source as a local
video device, standard ffmpeg builds can capture it without NDI support.
Device enumeration is platform specific:

- Windows: ``ffmpeg -list_devices true -f dshow -i dummy``
- macOS: ``ffmpeg -f avfoundation -list_devices true -i ""``
- Linux: ``/sys/class/video4linux/*/name`` (v4l2loopback devices)
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from stage_relay.core.logging_utils import LoggerLike, ensure_structured_logger

from .errors import DeviceProbeFailure

SYSFS_VIDEO4LINUX = Path("/sys/class/video4linux")

_DSHOW_DEVICE = re.compile(r'"([^"]+)"\s*\(video\)')
_DSHOW_QUOTED = re.compile(r'\]\s+"([^"@]+)"')
_AVFOUNDATION_DEVICE = re.compile(r"\]\s+\[\d+\]\s+(.+?)\s*$")

CommandRunner = Callable[[Sequence[str], float], Awaitable[str]]


@dataclass(frozen=True)
class BridgeDevice:
    """A local video device that re-publishes a network source."""

    name: str
    backend: str
    path: Optional[str] = None

    def input_args(self, frame_rate: int) -> List[str]:
        if self.backend == "dshow":
            return ["-f", "dshow", "-framerate", str(frame_rate), "-i", f"video={self.name}"]
        if self.backend == "avfoundation":
            return ["-f", "avfoundation", "-framerate", str(frame_rate), "-i", self.name]
        return ["-f", "v4l2", "-framerate", str(frame_rate), "-i", self.path or self.name]


async def run_listing_command(args: Sequence[str], timeout: float) -> str:
    """Run ``args`` and return combined stdout/stderr text.

    ffmpeg prints device lists on stderr and exits nonzero for the dummy
    input, so the exit status is ignored.
    """
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return stdout.decode("utf-8", errors="replace")


def parse_dshow_devices(output: str) -> List[str]:
    names = _DSHOW_DEVICE.findall(output)
    if names:
        return names
    # Older builds print the video section header followed by bare quoted names
    names = []
    in_video = False
    for line in output.splitlines():
        if "DirectShow video devices" in line:
            in_video = True
            continue
        if "DirectShow audio devices" in line:
            in_video = False
            continue
        match = _DSHOW_QUOTED.search(line)
        if in_video and match:
            names.append(match.group(1))
    return names


def parse_avfoundation_devices(output: str) -> List[str]:
    names = []
    in_video = False
    for line in output.splitlines():
        if "AVFoundation video devices" in line:
            in_video = True
            continue
        if "AVFoundation audio devices" in line:
            break
        match = _AVFOUNDATION_DEVICE.search(line)
        if in_video and match:
            names.append(match.group(1))
    return names


class BridgeDeviceProber:
    """Finds a configured bridge device among the local video devices."""

    def __init__(
        self,
        *,
        ffmpeg_path: str = "ffmpeg",
        backend: str = "v4l2",
        bridge_names: Sequence[str] = (),
        timeout: float = 3.0,
        sysfs_root: Path = SYSFS_VIDEO4LINUX,
        runner: Optional[CommandRunner] = None,
        logger: LoggerLike = None,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.backend = backend
        self.bridge_names = tuple(bridge_names)
        self.timeout = timeout
        self.sysfs_root = sysfs_root
        self._runner = runner or run_listing_command
        self.logger = ensure_structured_logger(logger, fallback_name="BridgeProbe")

    async def _run(self, args: Sequence[str]) -> str:
        try:
            return await self._runner(args, self.timeout)
        except asyncio.TimeoutError as exc:
            raise DeviceProbeFailure(f"device listing timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise DeviceProbeFailure(f"device listing failed: {exc}") from exc

    def _list_v4l2(self) -> List[BridgeDevice]:
        devices = []
        try:
            entries = sorted(self.sysfs_root.iterdir())
        except OSError as exc:
            raise DeviceProbeFailure(f"cannot read {self.sysfs_root}: {exc}") from exc
        for entry in entries:
            try:
                name = (entry / "name").read_text(encoding="utf-8").strip()
            except OSError:
                continue
            devices.append(BridgeDevice(name=name, backend="v4l2", path=f"/dev/{entry.name}"))
        return devices

    async def list_devices(self) -> List[BridgeDevice]:
        """Every local video device. Raises DeviceProbeFailure."""
        if self.backend == "dshow":
            output = await self._run([self.ffmpeg_path, "-hide_banner", "-list_devices", "true", "-f", "dshow", "-i", "dummy"])
            return [BridgeDevice(name, "dshow") for name in parse_dshow_devices(output)]
        if self.backend == "avfoundation":
            output = await self._run([self.ffmpeg_path, "-hide_banner", "-f", "avfoundation", "-list_devices", "true", "-i", ""])
            return [BridgeDevice(name, "avfoundation") for name in parse_avfoundation_devices(output)]
        return await asyncio.to_thread(self._list_v4l2)

    def match(self, devices: Sequence[BridgeDevice]) -> Optional[BridgeDevice]:
        """First device whose name contains a bridge name, in bridge-name order."""
        for bridge in self.bridge_names:
            wanted = bridge.lower()
            for device in devices:
                if wanted in device.name.lower():
                    return device
        return None

    async def probe(self) -> Optional[BridgeDevice]:
        devices = await self.list_devices()
        self.logger.debug("Found %d %s video device(s)", len(devices), self.backend)
        device = self.match(devices)
        if device:
            self.logger.info("Bridge device available: %s", device.name)
        return device


__all__ = [
    "BridgeDevice",
    "BridgeDeviceProber",
    "parse_avfoundation_devices",
    "parse_dshow_devices",
    "run_listing_command",
]
