"""Protocol drivers: one ICMP echo, TCP connect or DNS query against one target.

A failed check is an observation (DOWN), not an error; every driver returns a
ProbeOutcome and is bounded by the client's timeout.
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable

import dns.message
import dns.rdatatype
import ping3
from ping3.errors import PingError
import structlog

from host_checks.config import CHECK_KINDS
from host_checks.errors import ProbeInitError
from host_checks.targets import ProbeTarget


logger = structlog.get_logger(__name__)

PING_PAYLOAD_SIZE = 56
DNS_PORT = 53
DNS_QUERY_NAME = "google.com"
DNS_QUERY_ID = 0xABCD
SEQ_MODULUS = 0x10000


@dataclass(frozen=True)
class ProbeOutcome:
    up: bool
    latency_ms: float | None = None
    resolved_ip: str | None = None


DOWN = ProbeOutcome(up=False)


def build_dns_query() -> bytes:
    """Fixed A-record query (ID 0xABCD, RD set, no EDNS)."""
    query = dns.message.make_query(DNS_QUERY_NAME, dns.rdatatype.A)
    query.id = DNS_QUERY_ID
    return query.to_wire()


DNS_QUERY = build_dns_query()


def split_host_port(target: str) -> tuple[str, int]:
    host, sep, port = str(target or "").strip().rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"expected host:port, got {target!r}")
    port_num = int(port)
    if not (0 < port_num < 65536):
        raise ValueError(f"port out of range in {target!r}")
    return host.strip("[]"), port_num


def check_icmp_capability() -> None:
    """Raise ProbeInitError unless a raw or unprivileged ICMP socket can be opened."""
    errors: list[str] = []
    for sock_type in (socket.SOCK_RAW, socket.SOCK_DGRAM):
        try:
            sock = socket.socket(socket.AF_INET, sock_type, socket.IPPROTO_ICMP)
        except OSError as exc:
            errors.append(f"{type(exc).__name__}: {exc}")
            continue
        sock.close()
        return
    raise ProbeInitError(
        "Cannot open an ICMP socket (need CAP_NET_RAW or net.ipv4.ping_group_range): " + "; ".join(errors)
    )


class _DnsReplyProtocol(asyncio.DatagramProtocol):
    def __init__(self, reply: asyncio.Future[int]) -> None:
        self._reply = reply

    def datagram_received(self, data: bytes, addr) -> None:
        if data and not self._reply.done():
            self._reply.set_result(len(data))

    def error_received(self, exc: Exception) -> None:
        if not self._reply.done():
            self._reply.set_exception(exc)


def icmp_worker_count(targets: Iterable[ProbeTarget]) -> int:
    """One blocking ping per ICMP target can be in flight at once."""
    return max(1, sum(1 for t in targets if t.kind == "ping"))


class ProbeClient:
    """Shared probe handle for one scheduler context.

    Blocking ``ping3`` calls run on the client's own pool, sized so that every
    ICMP target of a cycle gets a worker and the cycle is bounded by a single
    timeout rather than by the number of targets.
    """

    def __init__(self, timeout_seconds: float, *, verify_icmp: bool = True, icmp_workers: int = 1) -> None:
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        if verify_icmp:
            check_icmp_capability()
        self.icmp_workers = max(1, int(icmp_workers))
        self._executor = ThreadPoolExecutor(max_workers=self.icmp_workers, thread_name_prefix="icmp")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    async def probe(self, target: ProbeTarget, seq: int) -> ProbeOutcome:
        if not target.is_service:
            try:
                ipaddress.ip_address(target.target)
            except ValueError:
                logger.warning("Invalid host address", host=target.label, addr=target.target)
                return DOWN
            return await self.ping(target.target, seq)

        if target.kind not in CHECK_KINDS:
            logger.warning("Unknown check type", check=target.kind, service=target.label, known=list(CHECK_KINDS))
            return DOWN
        if target.kind == "ping":
            return await self.ping(target.target, seq)
        if target.kind == "tcp":
            return await self.tcp(target.target)
        return await self.dns(target.target)

    async def resolve(self, target: str) -> str | None:
        try:
            return str(ipaddress.ip_address(target))
        except ValueError:
            pass
        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(target, None, family=socket.AF_INET, type=socket.SOCK_DGRAM),
                timeout=self.timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError):
            return None
        if not infos:
            return None
        return str(infos[0][4][0])

    def _ping_sync(self, addr: str, seq: int) -> float | None:
        delay = ping3.ping(
            addr,
            timeout=self.timeout_seconds,
            unit="ms",
            seq=int(seq) % SEQ_MODULUS,
            size=PING_PAYLOAD_SIZE,
        )
        # ping3 returns None on timeout and False on send/lookup errors.
        if delay is None or delay is False:
            return None
        return float(delay)

    async def ping(self, target: str, seq: int) -> ProbeOutcome:
        addr = await self.resolve(target)
        if addr is None:
            return DOWN
        try:
            loop = asyncio.get_running_loop()
            latency_ms = await loop.run_in_executor(self._executor, self._ping_sync, addr, seq)
        except (OSError, PingError) as exc:
            logger.debug("Ping failed", target=target, addr=addr, error=f"{type(exc).__name__}: {exc}")
            latency_ms = None
        if latency_ms is None:
            return ProbeOutcome(up=False, resolved_ip=addr)
        return ProbeOutcome(up=True, latency_ms=latency_ms, resolved_ip=addr)

    async def tcp(self, target: str) -> ProbeOutcome:
        try:
            host, port = split_host_port(target)
        except ValueError as exc:
            logger.warning("Invalid tcp target", target=target, error=str(exc))
            return DOWN

        start = time.perf_counter()
        try:
            _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=self.timeout_seconds)
        except (OSError, asyncio.TimeoutError):
            return DOWN
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        peer = writer.get_extra_info("peername")
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        peer_ip = str(peer[0]) if peer else None
        return ProbeOutcome(up=True, latency_ms=elapsed_ms, resolved_ip=peer_ip)

    async def dns(self, nameserver: str, port: int = DNS_PORT) -> ProbeOutcome:
        # The nameserver is the address itself; nothing is resolved or reported.
        try:
            ns_ip = ipaddress.ip_address(str(nameserver or "").strip())
        except ValueError:
            logger.warning("Invalid nameserver address", nameserver=nameserver)
            return DOWN

        loop = asyncio.get_running_loop()
        reply: asyncio.Future[int] = loop.create_future()
        try:
            transport, _protocol = await loop.create_datagram_endpoint(
                lambda: _DnsReplyProtocol(reply), remote_addr=(str(ns_ip), int(port))
            )
        except OSError:
            return DOWN

        try:
            start = time.perf_counter()
            transport.sendto(DNS_QUERY)
            await asyncio.wait_for(reply, timeout=self.timeout_seconds)
        except (OSError, asyncio.TimeoutError):
            return DOWN
        finally:
            transport.close()
        return ProbeOutcome(up=True, latency_ms=(time.perf_counter() - start) * 1000.0)
