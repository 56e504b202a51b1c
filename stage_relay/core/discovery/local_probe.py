"""Best-effort discovery from local configuration (registry, static list)."""

from __future__ import annotations

import asyncio
import re
import sys
from typing import Iterable, List, Optional, Sequence, Set

from stage_relay.core.logging_utils import LoggerLike, ensure_structured_logger

from .types import DiscoveryMethod, DiscoveryResult

NDI_REGISTRY_KEY = r"HKEY_CURRENT_USER\Software\NewTek\NDI"

# "    <value name>    REG_SZ    <data>"
_REG_VALUE_LINE = re.compile(r"^\s+(?P<name>.+?)\s{2,}(?P<kind>REG_[A-Z_]+)\s{2,}(?P<data>.*)$")
_SOURCE_VALUE_NAME = re.compile(r"source", re.IGNORECASE)


def parse_registry_output(output: str) -> List[str]:
    """Source names from ``reg query /s`` output.

    Only string values whose value name mentions a source are used; a data
    field may list several sources separated by commas or semicolons.
    """
    names: List[str] = []
    for line in output.splitlines():
        match = _REG_VALUE_LINE.match(line)
        if not match:
            continue
        if match.group("kind") not in ("REG_SZ", "REG_EXPAND_SZ", "REG_MULTI_SZ"):
            continue
        if not _SOURCE_VALUE_NAME.search(match.group("name")):
            continue
        for item in re.split(r"[;,]|\\0", match.group("data")):
            item = item.strip()
            if len(item) > 1 and item not in names:
                names.append(item)
    return names


class LocalProbeDiscovery:
    """Sources this host already knows about without touching the network."""

    method = DiscoveryMethod.LOCAL_PROBE

    def __init__(
        self,
        *,
        static_sources: Iterable[str] = (),
        registry_timeout: float = 2.0,
        query_registry: Optional[bool] = None,
        registry_command: Sequence[str] = ("reg", "query", NDI_REGISTRY_KEY, "/s"),
        logger: LoggerLike = None,
    ) -> None:
        self.static_sources = tuple(s for s in static_sources if s)
        self.registry_timeout = registry_timeout
        self.query_registry = sys.platform.startswith("win") if query_registry is None else query_registry
        self.registry_command = tuple(registry_command)
        self.logger = ensure_structured_logger(logger, fallback_name="LocalProbe")

    async def _query_registry(self) -> List[str]:
        proc = await asyncio.create_subprocess_exec(
            *self.registry_command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.registry_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            # Key absent is the usual case
            self.logger.debug("Registry query exited with %s", proc.returncode)
            return []
        return parse_registry_output(stdout.decode("utf-8", errors="replace"))

    async def run(self) -> DiscoveryResult:
        names: Set[str] = set(self.static_sources)
        error: Optional[str] = None

        if self.query_registry:
            try:
                found = await self._query_registry()
            except asyncio.TimeoutError:
                error = f"registry query timed out after {self.registry_timeout}s"
                self.logger.debug(error)
            except OSError as exc:
                error = f"registry query unavailable: {exc}"
                self.logger.debug(error)
            else:
                if found:
                    self.logger.info("Found %d source(s) in the NDI registry key", len(found))
                names.update(found)

        return DiscoveryResult(self.method, frozenset(names), error=error)


__all__ = ["LocalProbeDiscovery", "NDI_REGISTRY_KEY", "parse_registry_output"]
