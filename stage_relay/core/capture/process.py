"""Spawning of capture subprocesses."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Protocol, Sequence


class CaptureProcess(Protocol):
    """The subset of ``asyncio.subprocess.Process`` a session relies on."""

    pid: int
    returncode: Optional[int]
    stdout: Optional[asyncio.StreamReader]
    stderr: Optional[asyncio.StreamReader]

    async def wait(self) -> int:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


ProcessSpawner = Callable[[Sequence[str]], Awaitable[CaptureProcess]]


async def spawn_capture_process(argv: Sequence[str]) -> CaptureProcess:
    """Start ``argv`` with stdout/stderr piped. Raises OSError if it cannot run."""
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


__all__ = ["CaptureProcess", "ProcessSpawner", "spawn_capture_process"]
