"""Types shared by the discovery strategies."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional, Protocol


class DiscoveryMethod(str, Enum):
    """How a source was found."""

    MDNS = "mdns"
    LOCAL_PROBE = "local_probe"


@dataclass(frozen=True)
class DiscoveredSource:
    """A network video source seen during one discovery run.

    Equality and hashing use ``name`` only, so a set keeps one entry per
    source regardless of which strategy reported it.
    """

    name: str
    discovered_via: DiscoveryMethod = field(default=DiscoveryMethod.MDNS, compare=False)

    def to_dict(self) -> dict:
        return {"name": self.name, "discoveredVia": self.discovered_via.value}


@dataclass(frozen=True)
class DiscoveryResult:
    """Outcome of one strategy run. ``error`` is set when the run degraded."""

    method: DiscoveryMethod
    names: FrozenSet[str] = frozenset()
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DiscoveryStrategy(Protocol):
    method: DiscoveryMethod

    async def run(self) -> DiscoveryResult:
        ...


__all__ = [
    "DiscoveredSource",
    "DiscoveryMethod",
    "DiscoveryResult",
    "DiscoveryStrategy",
]
