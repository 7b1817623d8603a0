from __future__ import annotations

import asyncio
import socket

import ping3
import pytest

from host_checks import probes
from host_checks.errors import ProbeInitError
from host_checks.probes import (
    DNS_QUERY,
    DOWN,
    ProbeClient,
    ProbeOutcome,
    check_icmp_capability,
    icmp_worker_count,
    split_host_port,
)
from host_checks.targets import ProbeTarget


def _client(timeout: float = 1.0) -> ProbeClient:
    return ProbeClient(timeout, verify_icmp=False)


def _free_tcp_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


class _Responder(asyncio.DatagramProtocol):
    def __init__(self, reply: bool) -> None:
        self.reply = reply
        self.received: list[bytes] = []
        self.transport = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        self.received.append(data)
        if self.reply:
            # Any non-empty datagram counts as an answer.
            self.transport.sendto(data[:2] + b"\x81\x80", addr)


def test_split_host_port() -> None:
    assert split_host_port("cloudflare.com:443") == ("cloudflare.com", 443)
    assert split_host_port("[::1]:8080") == ("::1", 8080)
    for bad in ("cloudflare.com", ":443", "host:", "host:99999", "host:abc"):
        with pytest.raises(ValueError):
            split_host_port(bad)


def test_dns_query_wire_format() -> None:
    assert DNS_QUERY[:2] == b"\xab\xcd"
    flags = int.from_bytes(DNS_QUERY[2:4], "big")
    assert flags & 0x0100  # recursion desired
    assert DNS_QUERY[4:6] == b"\x00\x01"  # one question
    assert b"\x06google\x03com\x00" in DNS_QUERY


def test_icmp_capability_failure_is_fatal(monkeypatch) -> None:
    def _denied(*args, **kwargs):
        raise PermissionError("Operation not permitted")

    monkeypatch.setattr(probes.socket, "socket", _denied)
    with pytest.raises(ProbeInitError):
        check_icmp_capability()
    with pytest.raises(ProbeInitError):
        ProbeClient(2)


@pytest.mark.asyncio
async def test_tcp_up_reports_peer_and_latency() -> None:
    async def _handle(reader, writer) -> None:
        writer.close()

    server = await asyncio.start_server(_handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        outcome = await _client().tcp(f"127.0.0.1:{port}")
    finally:
        server.close()
        await server.wait_closed()

    assert outcome.up is True
    assert outcome.resolved_ip == "127.0.0.1"
    assert outcome.latency_ms is not None and outcome.latency_ms >= 0


@pytest.mark.asyncio
async def test_tcp_refused_is_down() -> None:
    outcome = await _client().tcp(f"127.0.0.1:{_free_tcp_port()}")
    assert outcome == DOWN


@pytest.mark.asyncio
async def test_tcp_malformed_target_is_down() -> None:
    assert await _client().tcp("no-port-here") == DOWN


@pytest.mark.asyncio
async def test_dns_any_reply_is_up() -> None:
    loop = asyncio.get_running_loop()
    transport, responder = await loop.create_datagram_endpoint(lambda: _Responder(reply=True), local_addr=("127.0.0.1", 0))
    port = transport.get_extra_info("sockname")[1]
    try:
        outcome = await _client().dns("127.0.0.1", port=port)
    finally:
        transport.close()

    assert outcome.up is True
    assert outcome.resolved_ip is None
    assert outcome.latency_ms is not None
    assert responder.received == [DNS_QUERY]


@pytest.mark.asyncio
async def test_dns_no_reply_times_out_down() -> None:
    loop = asyncio.get_running_loop()
    transport, _responder = await loop.create_datagram_endpoint(lambda: _Responder(reply=False), local_addr=("127.0.0.1", 0))
    port = transport.get_extra_info("sockname")[1]
    try:
        outcome = await _client(timeout=0.2).dns("127.0.0.1", port=port)
    finally:
        transport.close()
    assert outcome == DOWN


@pytest.mark.asyncio
async def test_dns_nameserver_must_be_an_address() -> None:
    assert await _client().dns("dns.google") == DOWN


@pytest.mark.asyncio
async def test_ping_uses_sequence_and_payload_size(monkeypatch) -> None:
    calls = []

    def _fake_ping(addr, timeout, unit, seq, size):
        calls.append((addr, unit, seq, size))
        return 12.5

    monkeypatch.setattr(ping3, "ping", _fake_ping)
    outcome = await _client().ping("10.0.0.7", seq=0x10001)

    assert outcome == ProbeOutcome(up=True, latency_ms=12.5, resolved_ip="10.0.0.7")
    assert calls == [("10.0.0.7", "ms", 1, 56)]


@pytest.mark.asyncio
async def test_ping_timeout_keeps_resolved_address(monkeypatch) -> None:
    monkeypatch.setattr(ping3, "ping", lambda *a, **kw: None)
    outcome = await _client().ping("10.0.0.7", seq=3)
    assert outcome.up is False
    assert outcome.latency_ms is None
    assert outcome.resolved_ip == "10.0.0.7"


@pytest.mark.asyncio
async def test_ping_socket_error_is_down(monkeypatch) -> None:
    def _boom(*args, **kwargs):
        raise OSError("network unreachable")

    monkeypatch.setattr(ping3, "ping", _boom)
    outcome = await _client().ping("10.0.0.7", seq=0)
    assert outcome.up is False


@pytest.mark.asyncio
async def test_unknown_check_kind_is_down(monkeypatch) -> None:
    monkeypatch.setattr(ping3, "ping", lambda *a, **kw: pytest.fail("must not ping"))
    target = ProbeTarget(subject_key="svc:Odd", kind="http", target="example.org", label="Odd", is_service=True)
    assert await _client().probe(target, 0) == DOWN


@pytest.mark.asyncio
async def test_invalid_host_address_is_down_without_probing(monkeypatch) -> None:
    monkeypatch.setattr(ping3, "ping", lambda *a, **kw: pytest.fail("must not ping"))
    target = ProbeTarget(subject_key="router.lan", kind="ping", target="router.lan", label="Router", is_service=False)
    assert await _client().probe(target, 0) == DOWN


@pytest.mark.asyncio
async def test_probe_dispatches_by_kind(monkeypatch) -> None:
    monkeypatch.setattr(ping3, "ping", lambda *a, **kw: 4.0)
    host = ProbeTarget(subject_key="192.168.1.1", kind="ping", target="192.168.1.1", label="Gateway", is_service=False)
    svc = ProbeTarget(subject_key="svc:Local", kind="ping", target="127.0.0.1", label="Local", is_service=True)

    assert (await _client().probe(host, 0)).latency_ms == 4.0
    assert (await _client().probe(svc, 0)).resolved_ip == "127.0.0.1"


def test_icmp_worker_count_covers_every_ping_target() -> None:
    targets = [
        ProbeTarget(subject_key=f"10.0.0.{i}", kind="ping", target=f"10.0.0.{i}", label=f"h{i}", is_service=False)
        for i in range(12)
    ]
    targets.append(ProbeTarget(subject_key="svc:Web", kind="tcp", target="example.org:443", label="Web", is_service=True))
    assert icmp_worker_count(targets) == 12
    assert icmp_worker_count([]) == 1
    assert ProbeClient(1.0, verify_icmp=False, icmp_workers=icmp_worker_count(targets)).icmp_workers == 12
