"""
Network video source discovery.

- mdns: multicast query/response browse for the NDI service type
- local_probe: registry and statically configured sources
- discoverer: runs both concurrently and merges the results
"""

from .discoverer import ServiceDiscoverer
from .local_probe import LocalProbeDiscovery
from .mdns import MdnsDiscovery, extract_source_names, source_name_from_record
from .types import DiscoveredSource, DiscoveryMethod, DiscoveryResult, DiscoveryStrategy

__all__ = [
    "DiscoveredSource",
    "DiscoveryMethod",
    "DiscoveryResult",
    "DiscoveryStrategy",
    "LocalProbeDiscovery",
    "MdnsDiscovery",
    "ServiceDiscoverer",
    "extract_source_names",
    "source_name_from_record",
]
