"""Turns raw peer messages into the smaller set of events the node acts on."""

from __future__ import annotations

import asyncio
import enum
import ipaddress
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Union

from .messages import (
    InventoryType,
    NetAddress,
    NetworkMessage,
    ServiceFlags,
)
from .prelude import AddrKind, AddrV2

MAX_ADDR = 1_000
MAX_INV = 50_000
MAX_HEADERS = 2_000

_ONION_PREFIX = bytes.fromhex("fd87d87eeb43")
_BLOCK_INVENTORY = frozenset(
    {InventoryType.BLOCK, InventoryType.COMPACT_BLOCK, InventoryType.WITNESS_BLOCK}
)
_IGNORED = frozenset({
    "getblocks", "getheaders", "mempool", "sendheaders", "getaddr", "merkleblock",
    "filterload", "filteradd", "filterclear", "getcfilters", "getcfheaders",
    "getcfcheckpt", "cfcheckpt", "sendcmpct", "cmpctblock", "getblocktxn",
    "blocktxn", "alert", "wtxidrelay", "sendaddrv2",
})


@dataclass(frozen=True)
class CombinedAddr:
    """A peer address with its port and advertised services."""

    addr: AddrV2
    port: int
    services: ServiceFlags = ServiceFlags.NONE


@dataclass(frozen=True)
class RejectPayload:
    """What a peer reported when rejecting a transaction."""

    reason: Optional[int]
    txid: bytes


class PeerMessageKind(enum.Enum):
    """Events a peer connection reports to the node."""

    VERSION = "version"
    VERACK = "verack"
    ADDR = "addr"
    HEADERS = "headers"
    FILTER_HEADERS = "filter_headers"
    FILTER = "filter"
    BLOCK = "block"
    NEW_BLOCKS = "new_blocks"
    TX_REQUESTS = "tx_requests"
    TX = "tx"
    PING = "ping"
    PONG = "pong"
    FEE_FILTER = "fee_filter"
    REJECT = "reject"
    DISCONNECT = "disconnect"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class PeerMessage:
    """An event and its payload; fee filters are given in satoshis per kilo-weight-unit."""

    kind: PeerMessageKind
    payload: Any = None


_DISCONNECT = PeerMessage(PeerMessageKind.DISCONNECT)


class _MessageParser(Protocol):
    async def read_message(self) -> Optional[NetworkMessage]: ...


IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _socket_ip(address: IpAddress) -> Optional[IpAddress]:
    if isinstance(address, ipaddress.IPv4Address):
        return address
    packed = address.packed
    if packed[:6] == _ONION_PREFIX:
        return None
    if address.ipv4_mapped is not None:
        return address.ipv4_mapped
    if packed[:12] == bytes(12):
        return ipaddress.IPv4Address(packed[12:])
    return address


def _addr_v2(ip: IpAddress) -> AddrV2:
    kind = AddrKind.IPV4 if isinstance(ip, ipaddress.IPv4Address) else AddrKind.IPV6
    return AddrV2(kind, ip)


class Reader:
    """Reads messages from a parser and forwards the useful ones to a queue."""

    def __init__(self, parser: _MessageParser, sender: "asyncio.Queue[PeerMessage]") -> None:
        self.parser = parser
        self.sender = sender
        self._handlers: Dict[str, Callable[[Any], Optional[PeerMessage]]] = {
            "version": lambda p: PeerMessage(PeerMessageKind.VERSION, p),
            "verack": lambda p: PeerMessage(PeerMessageKind.VERACK),
            "addr": self._addr,
            "addrv2": self._addrv2,
            "inv": self._inv,
            "getdata": self._getdata,
            "notfound": lambda p: PeerMessage(PeerMessageKind.NOT_FOUND, p),
            "tx": lambda p: PeerMessage(PeerMessageKind.TX, p),
            "block": lambda p: PeerMessage(PeerMessageKind.BLOCK, p),
            "headers": self._headers,
            "ping": lambda p: PeerMessage(PeerMessageKind.PING, p),
            "pong": lambda p: PeerMessage(PeerMessageKind.PONG, p),
            "cfilter": lambda p: PeerMessage(PeerMessageKind.FILTER, p),
            "cfheaders": lambda p: PeerMessage(PeerMessageKind.FILTER_HEADERS, p),
            "reject": lambda p: PeerMessage(
                PeerMessageKind.REJECT, RejectPayload(reason=p.ccode, txid=p.hash)
            ),
            "feefilter": self._feefilter,
        }

    async def read_from_remote(self) -> None:
        """Forward messages until the parser raises."""
        while True:
            message = await self.parser.read_message()
            if message is None:
                continue
            cleaned = self.parse_message(message)
            if cleaned is not None:
                await self.sender.put(cleaned)

    def parse_message(self, message: NetworkMessage) -> Optional[PeerMessage]:
        """Map a network message to an event, or None if it is of no interest."""
        if not message.is_known:
            return _DISCONNECT
        if message.command in _IGNORED:
            return None
        handler = self._handlers.get(message.command)
        if handler is None:
            return _DISCONNECT
        return handler(message.payload)

    @staticmethod
    def _addr(entries: Any) -> Optional[PeerMessage]:
        if len(entries) > MAX_ADDR:
            return _DISCONNECT
        addresses = []
        for _time, net_addr in entries:
            net_addr: NetAddress
            if not net_addr.services.has(ServiceFlags.NETWORK):
                continue
            ip = _socket_ip(net_addr.address)
            if ip is None:
                continue
            addresses.append(CombinedAddr(_addr_v2(ip), net_addr.port))
        if not addresses:
            return None
        return PeerMessage(PeerMessageKind.ADDR, addresses)

    @staticmethod
    def _addrv2(entries: Any) -> Optional[PeerMessage]:
        if len(entries) > MAX_ADDR:
            return _DISCONNECT
        addresses = [
            CombinedAddr(entry.addr, entry.port, entry.services)
            for entry in entries
            if entry.services.has(ServiceFlags.NETWORK)
        ]
        if not addresses:
            return None
        return PeerMessage(PeerMessageKind.ADDR, addresses)

    @staticmethod
    def _inv(inventory: Any) -> Optional[PeerMessage]:
        if len(inventory) > MAX_INV:
            return _DISCONNECT
        hashes = [inv.hash for inv in inventory if inv.kind in _BLOCK_INVENTORY]
        if not hashes:
            return None
        return PeerMessage(PeerMessageKind.NEW_BLOCKS, hashes)

    @staticmethod
    def _getdata(inventory: Any) -> PeerMessage:
        requests = [inv.hash for inv in inventory if inv.kind == InventoryType.WTX]
        return PeerMessage(PeerMessageKind.TX_REQUESTS, requests)

    @staticmethod
    def _headers(headers: Any) -> PeerMessage:
        if len(headers) > MAX_HEADERS:
            return _DISCONNECT
        return PeerMessage(PeerMessageKind.HEADERS, headers)

    @staticmethod
    def _feefilter(rate: int) -> PeerMessage:
        if rate < 0:
            return _DISCONNECT
        return PeerMessage(PeerMessageKind.FEE_FILTER, rate // 4)