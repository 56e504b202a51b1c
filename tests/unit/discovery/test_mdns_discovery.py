"""Unit tests for the mDNS discovery strategy."""

import asyncio
import socket

import pytest
from zeroconf import DNSIncoming, DNSOutgoing, DNSPointer, DNSQuestion, DNSService, DNSText

from stage_relay.core.discovery import DiscoveryMethod, MdnsDiscovery
from stage_relay.core.discovery.mdns import (
    CLASS_IN,
    FLAGS_AA,
    FLAGS_QR_QUERY,
    FLAGS_QR_RESPONSE,
    META_QUERY,
    TYPE_PTR,
    TYPE_SRV,
    TYPE_TXT,
    build_query_packets,
    extract_source_names,
    source_name_from_record,
)

SERVICE = "_ndi._tcp.local."


def _response(*, answers=(), additionals=(), authorities=()) -> bytes:
    out = DNSOutgoing(FLAGS_QR_RESPONSE | FLAGS_AA, multicast=True)
    for record in answers:
        out.add_answer_at_time(record, 0)
    for record in authorities:
        out.add_authorative_answer(record)
    for record in additionals:
        out.add_additional_answer(record)
    return out.packets()[0]


def _pointer(instance: str, service: str = SERVICE) -> DNSPointer:
    return DNSPointer(service, TYPE_PTR, CLASS_IN, 4500, f"{instance}.{service}")


def _srv(instance: str) -> DNSService:
    return DNSService(f"{instance}.{SERVICE}", TYPE_SRV, CLASS_IN, 120, 0, 0, 5961, "studio-pc.local.")


def _txt(instance: str) -> DNSText:
    return DNSText(f"{instance}.{SERVICE}", TYPE_TXT, CLASS_IN, 4500, b"\x00")


class TestSourceNameFromRecord:

    @pytest.mark.parametrize("record, expected", [
        ("STUDIO-PC (Cam 1)._ndi._tcp.local.", "STUDIO-PC (Cam 1)"),
        ("STUDIO-PC (Cam 1)._ndi._tcp.local", "STUDIO-PC (Cam 1)"),
        ("stage-pc.local.", "stage-pc"),
        ("OBS (Program)", "OBS (Program)"),
    ])
    def test_instance_extracted(self, record, expected):
        assert source_name_from_record(record, SERVICE) == expected

    @pytest.mark.parametrize("record", [
        "_ndi._tcp.local.",
        "_ndi._tcp.local",
        "_ndi",
        "_ndi._tcp",
        "x._ndi._tcp.local.",
        ".local",
        "",
    ])
    def test_degenerate_names_rejected(self, record):
        assert source_name_from_record(record, SERVICE) is None


class TestExtractSourceNames:

    def test_pointer_answers(self):
        packet = _response(answers=[_pointer("STUDIO-PC (Cam 1)"), _pointer("STUDIO-PC (Cam 2)")])
        names = extract_source_names(DNSIncoming(packet), SERVICE)
        assert names == {"STUDIO-PC (Cam 1)", "STUDIO-PC (Cam 2)"}

    def test_service_and_text_records_in_additional_section(self):
        packet = _response(
            answers=[_pointer("A (One)")],
            additionals=[_srv("B (Two)"), _txt("C (Three)")],
        )
        names = extract_source_names(DNSIncoming(packet), SERVICE)
        assert names == {"A (One)", "B (Two)", "C (Three)"}

    def test_authority_section(self):
        packet = _response(authorities=[_srv("Announcer (Main)")])
        assert extract_source_names(DNSIncoming(packet), SERVICE) == {"Announcer (Main)"}

    def test_other_services_ignored(self):
        packet = _response(answers=[
            _pointer("Printer", "_ipp._tcp.local."),
            DNSPointer("_services._dns-sd._udp.local.", TYPE_PTR, CLASS_IN, 4500, SERVICE),
        ])
        assert extract_source_names(DNSIncoming(packet), SERVICE) == set()

    def test_instance_questions_count(self):
        out = DNSOutgoing(FLAGS_QR_QUERY, multicast=True)
        out.add_question(DNSQuestion(f"Probe Host (Out).{SERVICE}", TYPE_SRV, CLASS_IN))
        out.add_question(DNSQuestion(SERVICE, TYPE_PTR, CLASS_IN))
        names = extract_source_names(DNSIncoming(out.packets()[0]), SERVICE)
        assert names == {"Probe Host (Out)"}

    def test_our_own_query_yields_nothing(self):
        packets = build_query_packets(SERVICE, include_meta=True)
        assert extract_source_names(DNSIncoming(packets[0]), SERVICE) == set()


class TestQueryPackets:

    def test_plain_query(self):
        incoming = DNSIncoming(build_query_packets(SERVICE)[0])
        assert incoming.is_query()
        assert [q.name for q in incoming.questions] == [SERVICE]

    def test_meta_query_added(self):
        incoming = DNSIncoming(build_query_packets(SERVICE, include_meta=True)[0])
        assert {q.name for q in incoming.questions} == {SERVICE, META_QUERY}
        assert all(q.type == TYPE_PTR for q in incoming.questions)


def _loopback_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.setblocking(False)
    return sock


class TestMdnsDiscoveryRun:

    @pytest.mark.asyncio
    async def test_socket_failure_degrades_to_empty_result(self):
        def broken():
            raise OSError("address in use")

        result = await MdnsDiscovery(SERVICE, window=0.2, socket_factory=broken).run()

        assert result.method is DiscoveryMethod.MDNS
        assert result.names == frozenset()
        assert "address in use" in result.error

    @pytest.mark.asyncio
    async def test_window_bounds_run_time(self):
        loop = asyncio.get_running_loop()
        discovery = MdnsDiscovery(SERVICE, window=0.3, query_offsets=(0.0, 0.1), socket_factory=_loopback_socket)

        started = loop.time()
        result = await discovery.run()
        elapsed = loop.time() - started

        assert 0.25 <= elapsed < 1.0
        assert result.names == frozenset()

    @pytest.mark.asyncio
    async def test_responses_during_window_collected(self):
        bound = []

        def factory():
            sock = _loopback_socket()
            bound.append(sock.getsockname())
            return sock

        discovery = MdnsDiscovery(SERVICE, window=0.5, query_offsets=(0.0,), socket_factory=factory)
        task = asyncio.create_task(discovery.run())
        while not bound:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)

        sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sender.sendto(b"\x00garbage", bound[0])
            sender.sendto(_response(answers=[_pointer("STAGE (Wide)")]), bound[0])
        finally:
            sender.close()

        result = await task
        assert result.names == frozenset({"STAGE (Wide)"})
        assert result.ok

    def test_offsets_outside_window_dropped(self):
        discovery = MdnsDiscovery(SERVICE, window=1.5, query_offsets=(2.0, 0.0, 1.0))
        assert discovery.query_offsets == (0.0, 1.0)

    def test_undecodable_packet_ignored(self):
        discovery = MdnsDiscovery(SERVICE)
        names = set()
        discovery._handle_packet(b"\xff" * 7, names)
        discovery._handle_packet(_response(answers=[_pointer("Good (Feed)")]), names)
        assert names == {"Good (Feed)"}
