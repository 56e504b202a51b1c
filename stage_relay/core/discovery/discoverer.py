"""Runs the discovery strategies together and merges their findings."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Sequence

from stage_relay.core.logging_utils import LoggerLike, ensure_structured_logger
from stage_relay.core.settings import DiscoverySettings

from .local_probe import LocalProbeDiscovery
from .mdns import MdnsDiscovery
from .types import DiscoveredSource, DiscoveryMethod, DiscoveryResult, DiscoveryStrategy


class ServiceDiscoverer:
    """Union of every strategy's sources for one discovery run.

    ``discover()`` never raises. A strategy that fails is logged and
    contributes nothing; the run still returns what the others found.
    """

    def __init__(
        self,
        strategies: Optional[Sequence[DiscoveryStrategy]] = None,
        *,
        logger: LoggerLike = None,
    ) -> None:
        self.logger = ensure_structured_logger(logger, fallback_name="ServiceDiscoverer")
        self.strategies = list(strategies) if strategies is not None else []
        self.last_results: list[DiscoveryResult] = []

    @classmethod
    def from_settings(cls, settings: DiscoverySettings, *, logger: LoggerLike = None) -> "ServiceDiscoverer":
        log = ensure_structured_logger(logger, fallback_name="ServiceDiscoverer")
        return cls(
            [
                MdnsDiscovery(
                    settings.service_type,
                    window=settings.window,
                    query_offsets=settings.query_offsets,
                    logger=log.getChild("mDNS"),
                ),
                LocalProbeDiscovery(
                    static_sources=settings.static_sources,
                    registry_timeout=settings.registry_timeout,
                    logger=log.getChild("LocalProbe"),
                ),
            ],
            logger=log,
        )

    async def _run_strategy(self, strategy: DiscoveryStrategy) -> DiscoveryResult:
        try:
            return await strategy.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.error("%s discovery failed: %s", strategy.method.value, exc, exc_info=True)
            return DiscoveryResult(strategy.method, frozenset(), error=str(exc))

    async def discover(self) -> set[DiscoveredSource]:
        self.logger.info("Discovering sources with %d strategies", len(self.strategies))
        results = await asyncio.gather(*(self._run_strategy(s) for s in self.strategies))
        self.last_results = list(results)

        merged: Dict[str, DiscoveredSource] = {}
        for result in results:
            if result.error:
                self.logger.debug("%s degraded: %s", result.method.value, result.error)
            self.logger.info("%s discovery found %d source(s)", result.method.value, len(result.names))
            for name in sorted(result.names):
                merged.setdefault(name, DiscoveredSource(name, result.method))

        self.logger.info("Discovery complete: %d unique source(s)", len(merged))
        return set(merged.values())

    async def discover_names(self) -> list[str]:
        """Sorted source names, the shape the HTTP endpoint returns."""
        return sorted(source.name for source in await self.discover())


__all__ = ["ServiceDiscoverer", "DiscoveryMethod"]
