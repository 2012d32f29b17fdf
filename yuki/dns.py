"""Peer discovery through DNS seeds using hand-built A-record queries."""

from __future__ import annotations

import asyncio
import ipaddress
import os
import struct
import sys
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .errors import DnsBootstrapError, DNSQueryError, DNSQueryErrorKind
from .messages import ServiceFlags
from .prelude import Network, encode_qname

MIN_PEERS = 10
DNS_RESOLVER_PORT = 53
HEADER_BYTES = 12
MAX_RESPONSE_BYTES = 512

SIGNET_SEEDS = ("seed.dlsouza.lol", "seed.signet.bitcoin.sprovoost.nl")
TESTNET_SEEDS = (
    "testnet-seed.bitcoin.jonasschnelli.ch",
    "seed.tbtc.petertodd.org",
    "seed.testnet.bitcoin.sprovoost.nl",
    "testnet-seed.bluematt.me",
)
MAINNET_SEEDS = (
    "dnsseed.bluematt.me",
    "seed.bitcoinstats.com",
    "seed.btc.petertodd.org",
    "seed.bitcoin.sprovoost.nl",
    "dnsseed.emzy.de",
    "seed.bitcoin.wiz.biz",
)
TESTNET4_SEEDS = ("seed.testnet4.bitcoin.sprovoost.nl", "seed.testnet4.wiz.biz")

_RECURSIVE_FLAGS = b"\x01\x00"
_QDCOUNT = b"\x00\x01"
_COUNTS = b"\x00" * 6
_QTYPE = b"\x00\x01\x00\x01"
_A_RECORD = 1
_A_CLASS = 1
_EXPECTED_RDATA_LEN = 4

_SEEDS = {
    Network.BITCOIN: MAINNET_SEEDS,
    Network.TESTNET: TESTNET_SEEDS,
    Network.SIGNET: SIGNET_SEEDS,
    Network.REGTEST: (),
    Network.TESTNET4: TESTNET4_SEEDS,
}


def seeds_for_network(network: Network) -> List[str]:
    """The DNS seed host names of a network."""
    return list(_SEEDS[network])


@dataclass(frozen=True)
class DnsResolver:
    """The recursive resolver queries are sent to."""

    host: str = "1.1.1.1"
    port: int = DNS_RESOLVER_PORT

    @property
    def socket_addr(self) -> Tuple[str, int]:
        return (self.host, self.port)


class _ResponseProtocol(asyncio.DatagramProtocol):
    def __init__(self, received: "asyncio.Future[bytes]") -> None:
        self._received = received

    def datagram_received(self, data: bytes, addr: object) -> None:
        if not self._received.done():
            self._received.set_result(data)

    def error_received(self, exc: Exception) -> None:
        if not self._received.done():
            self._received.set_exception(DNSQueryError(DNSQueryErrorKind.UDP))


class DNSQuery:
    """A single A-record query for one seed."""

    def __init__(self, seed: str, message_id: Optional[bytes] = None) -> None:
        self.message_id = message_id if message_id is not None else os.urandom(2)
        if len(self.message_id) != 2:
            raise ValueError("message id must be two bytes")
        self.question = encode_qname(seed) + _QTYPE
        self.message = (
            self.message_id + _RECURSIVE_FLAGS + _QDCOUNT + _COUNTS + self.question
        )

    async def lookup(self, resolver: DnsResolver) -> List[ipaddress.IPv4Address]:
        """Send the query to the resolver and return the IPv4 addresses answered."""
        loop = asyncio.get_running_loop()
        received: "asyncio.Future[bytes]" = loop.create_future()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _ResponseProtocol(received),
                local_addr=("0.0.0.0", 0),
                remote_addr=resolver.socket_addr,
            )
        except OSError as exc:
            raise DNSQueryError(DNSQueryErrorKind.CONNECTION_DENIED) from exc
        try:
            try:
                transport.sendto(self.message)
                transport.sendto(self.message)
            except OSError as exc:
                raise DNSQueryError(DNSQueryErrorKind.UDP) from exc
            response = (await received)[:MAX_RESPONSE_BYTES]
        finally:
            transport.close()
        if len(response) < HEADER_BYTES:
            raise DNSQueryError(DNSQueryErrorKind.MALFORMED_HEADER)
        return self.parse_message(response)

    def parse_message(self, response: bytes) -> List[ipaddress.IPv4Address]:
        """Extract A records from a response to this query."""
        view = memoryview(response)
        pos = 0

        def take(count: int) -> bytes:
            nonlocal pos
            if pos + count > len(view):
                raise DNSQueryError(DNSQueryErrorKind.UNEXPECTED_EOF)
            chunk = bytes(view[pos:pos + count])
            pos += count
            return chunk

        if take(2) != self.message_id:
            raise DNSQueryError(DNSQueryErrorKind.MESSAGE_ID)
        _flags, _qdcount, ancount, _nscount, _arcount = struct.unpack(">5H", take(10))
        if take(len(self.question)) != self.question:
            raise DNSQueryError(DNSQueryErrorKind.QUESTION)
        ips = []
        for _ in range(ancount):
            take(2)  # compressed name
            atype, aclass, _ttl, rdlength = struct.unpack(">HHIH", take(10))
            rdata = take(rdlength)
            if atype == _A_RECORD and aclass == _A_CLASS and rdlength == _EXPECTED_RDATA_LEN:
                ips.append(ipaddress.IPv4Address(rdata))
        return ips


@dataclass
class Dns:
    """Bootstraps peer addresses from a network's DNS seeds."""

    network: Network
    resolver: DnsResolver = field(default_factory=DnsResolver)

    @property
    def seeds(self) -> List[str]:
        return seeds_for_network(self.network)

    async def bootstrap(self, flags: ServiceFlags) -> List[ipaddress.IPv4Address]:
        """Query every seed; raises DnsBootstrapError if too few peers were found."""
        addresses: List[ipaddress.IPv4Address] = []
        for seed in self.seeds:
            host = seed
            if flags.has(ServiceFlags.COMPACT_FILTERS):
                host = f"x49.{seed}"
            elif flags.has(ServiceFlags.NETWORK):
                host = f"x9.{seed}"
            try:
                addresses.extend(await DNSQuery(host).lookup(self.resolver))
            except DNSQueryError as exc:
                print(exc, file=sys.stderr)
        if len(addresses) < MIN_PEERS:
            raise DnsBootstrapError()
        return addresses