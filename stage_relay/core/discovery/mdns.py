"""
Multicast DNS query/response discovery of NDI sources.

A one-shot browse: a PTR query for the service type goes out on a shared
5353 socket, is repeated a couple of times to catch slow responders, and
every packet heard during the window is mined for instance names. Wire
records are encoded and decoded with zeroconf's DNS classes; no zeroconf
engine (cache, service browser, announcer) is started.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
import struct
from typing import Callable, Iterable, Optional, Set

from zeroconf import DNSIncoming, DNSOutgoing, DNSPointer, DNSQuestion

from stage_relay.core.logging_utils import LoggerLike, ensure_structured_logger
from stage_relay.core.settings import NDI_SERVICE_TYPE

from .types import DiscoveryMethod, DiscoveryResult

MDNS_GROUP = "224.0.0.251"
MDNS_PORT = 5353
META_QUERY = "_services._dns-sd._udp.local."

TYPE_PTR = 12
TYPE_TXT = 16
TYPE_SRV = 33
CLASS_IN = 1
FLAGS_QR_QUERY = 0x0000
FLAGS_QR_RESPONSE = 0x8000
FLAGS_AA = 0x0400

SocketFactory = Callable[[], socket.socket]


def _strip_dot(name: str) -> str:
    return name[:-1] if name.endswith(".") else name


def source_name_from_record(name: str, service_type: str = NDI_SERVICE_TYPE) -> Optional[str]:
    """Instance part of an mDNS owner name, or None for degenerate names.

    ``"STUDIO-PC (Cam 1)._ndi._tcp.local."`` -> ``"STUDIO-PC (Cam 1)"``.
    """
    service = _strip_dot(service_type)
    service_token = service.split(".", 1)[0]
    bare_service = service[: -len(".local")] if service.endswith(".local") else service

    candidate = _strip_dot(name.strip())
    if candidate.lower().endswith("." + service.lower()):
        candidate = candidate[: -(len(service) + 1)]
    elif candidate.lower().endswith(".local"):
        candidate = candidate[: -len(".local")]

    if len(candidate) <= 1:
        return None
    lowered = candidate.lower()
    if lowered in (service_token.lower(), bare_service.lower(), service.lower()):
        return None
    return candidate


def _names_service(name: str, service_type: str) -> bool:
    return _strip_dot(name).lower().endswith(_strip_dot(service_type).lower())


def extract_source_names(incoming: DNSIncoming, service_type: str = NDI_SERVICE_TYPE) -> Set[str]:
    """Collect instance names of ``service_type`` from one parsed packet.

    Answer, authority and additional sections are all inspected. PTR records
    for the service contribute their target, SRV/TXT records their owner
    name. Questions about a specific instance count as well, since some
    senders announce themselves by querying for their own records.
    """
    found: Set[str] = set()
    if not incoming.valid:
        return found

    for record in incoming.answers():
        if record.type == TYPE_PTR and isinstance(record, DNSPointer):
            if _names_service(record.name, service_type):
                name = source_name_from_record(record.alias, service_type)
                if name:
                    found.add(name)
        elif record.type in (TYPE_SRV, TYPE_TXT):
            if _names_service(record.name, service_type):
                name = source_name_from_record(record.name, service_type)
                if name:
                    found.add(name)

    if incoming.is_query():
        for question in incoming.questions:
            if _names_service(question.name, service_type):
                name = source_name_from_record(question.name, service_type)
                if name:
                    found.add(name)

    return found


def build_query_packets(service_type: str = NDI_SERVICE_TYPE, *, include_meta: bool = False) -> list[bytes]:
    out = DNSOutgoing(FLAGS_QR_QUERY, multicast=True)
    out.add_question(DNSQuestion(service_type, TYPE_PTR, CLASS_IN))
    if include_meta:
        out.add_question(DNSQuestion(META_QUERY, TYPE_PTR, CLASS_IN))
    return out.packets()


def open_multicast_socket(port: int = MDNS_PORT, group: str = MDNS_GROUP) -> socket.socket:
    """UDP socket bound to the mDNS port and joined to the mDNS group.

    Address reuse lets it coexist with a system responder (avahi, Bonjour).
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            # Not all kernels honour it; REUSEADDR alone is enough on Windows
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 255)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
        sock.bind(("", port))
        membership = struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton("0.0.0.0"))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class _MdnsProtocol(asyncio.DatagramProtocol):
    def __init__(self, on_packet: Callable[[bytes], None], logger) -> None:
        self._on_packet = on_packet
        self._logger = logger

    def datagram_received(self, data: bytes, addr) -> None:
        self._on_packet(data)

    def error_received(self, exc: Exception) -> None:
        self._logger.debug("mDNS socket error: %s", exc)


class MdnsDiscovery:
    """Browse for instances of ``service_type`` for a fixed window.

    Usage:
        result = await MdnsDiscovery(window=5.0).run()
        result.names  # frozenset of source names
    """

    method = DiscoveryMethod.MDNS

    def __init__(
        self,
        service_type: str = NDI_SERVICE_TYPE,
        *,
        window: float = 5.0,
        query_offsets: Iterable[float] = (0.0, 1.0, 2.0),
        socket_factory: Optional[SocketFactory] = None,
        logger: LoggerLike = None,
    ) -> None:
        self.service_type = service_type
        self.window = window
        self.query_offsets = tuple(sorted(o for o in query_offsets if 0 <= o < window))
        self._socket_factory = socket_factory or open_multicast_socket
        self.logger = ensure_structured_logger(logger, fallback_name="MdnsDiscovery")

    def _handle_packet(self, data: bytes, names: Set[str]) -> None:
        try:
            incoming = DNSIncoming(data)
        except Exception as exc:
            # Junk on 5353 is normal; one bad packet must not end the browse
            self.logger.debug("Ignoring undecodable mDNS packet (%d bytes): %s", len(data), exc)
            return
        for name in extract_source_names(incoming, self.service_type):
            if name not in names:
                names.add(name)
                self.logger.info("Found source via mDNS: %s", name)

    async def run(self) -> DiscoveryResult:
        loop = asyncio.get_running_loop()
        names: Set[str] = set()

        try:
            sock = self._socket_factory()
        except OSError as exc:
            self.logger.warning("mDNS socket unavailable: %s", exc)
            return DiscoveryResult(self.method, frozenset(), error=str(exc))

        transport: Optional[asyncio.DatagramTransport] = None
        error: Optional[str] = None
        started = loop.time()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _MdnsProtocol(lambda data: self._handle_packet(data, names), self.logger),
                sock=sock,
            )
            last = len(self.query_offsets) - 1
            for index, offset in enumerate(self.query_offsets):
                delay = started + offset - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
                # The final round also asks for every advertised service type
                include_meta = index == last and index > 0
                for packet in build_query_packets(self.service_type, include_meta=include_meta):
                    transport.sendto(packet, (MDNS_GROUP, MDNS_PORT))
                self.logger.debug("Sent mDNS query round %d (meta=%s)", index + 1, include_meta)

            remaining = started + self.window - loop.time()
            if remaining > 0:
                await asyncio.sleep(remaining)
        except OSError as exc:
            error = str(exc)
            self.logger.warning("mDNS browse failed: %s", exc)
        finally:
            if transport is not None:
                transport.close()
            else:
                sock.close()

        self.logger.debug(
            "mDNS window closed after %.2fs with %d source(s)", loop.time() - started, len(names)
        )
        return DiscoveryResult(self.method, frozenset(names), error=error)


__all__ = [
    "MdnsDiscovery",
    "build_query_packets",
    "extract_source_names",
    "open_multicast_socket",
    "source_name_from_record",
]
