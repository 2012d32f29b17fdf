"""Plaintext peer-to-peer framing: building outbound messages and parsing inbound ones."""

from __future__ import annotations

import asyncio
import ipaddress
import struct
import time
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import PeerReadError, PeerReadErrorKind
from .messages import (
    ZERO_HASH,
    Block,
    GetCFHeaders,
    GetCFilters,
    GetHeadersMessage,
    Inventory,
    InventoryType,
    NetAddress,
    NetworkMessage,
    ServiceFlags,
    Transaction,
    VersionMessage,
    decode_payload,
    double_sha256,
    encode_payload,
)
from .prelude import Network, default_port_from_network

PROTOCOL_VERSION = 70016
YUKI_VERSION = "0.0.1"
# Version field carried inside getheaders requests.
GETHEADERS_VERSION = 70001
HEADER_SIZE = 24
MAX_MESSAGE_BYTES = 1024 * 1024 * 32
_COMMAND_SIZE = 12


def _checksum(payload: bytes) -> bytes:
    return double_sha256(payload)[:4]


@dataclass(frozen=True)
class V1Header:
    """The 24-byte header in front of every plaintext message."""

    magic: bytes
    command: str
    length: int
    checksum: bytes

    @classmethod
    def decode(cls, data: bytes) -> "V1Header":
        """Parse a header; raises ValueError when fewer than 24 bytes are given."""
        if len(data) < HEADER_SIZE:
            raise ValueError("message header is too short")
        magic = bytes(data[:4])
        command = bytes(data[4:16]).replace(b"\x00", b"").decode("latin-1")
        (length,) = struct.unpack("<I", bytes(data[16:20]))
        checksum = bytes(data[20:24])
        return cls(magic, command, length, checksum)


def make_version(port: Optional[int], network: Network) -> VersionMessage:
    """The version message this node opens every connection with."""
    address = NetAddress(
        ServiceFlags.NONE,
        ipaddress.IPv4Address("127.0.0.1"),
        port if port is not None else default_port_from_network(network),
    )
    return VersionMessage(
        version=PROTOCOL_VERSION,
        services=ServiceFlags.NONE,
        timestamp=int(time.time()),
        receiver=address,
        sender=address,
        nonce=1,
        user_agent=f"Yuki / {YUKI_VERSION}",
        start_height=0,
        relay=False,
    )


def frame_message(network: Network, message: NetworkMessage) -> bytes:
    """Serialize a message with its header for the given network."""
    command = message.command.encode("ascii")
    if len(command) > _COMMAND_SIZE:
        raise ValueError("command name is longer than 12 bytes")
    payload = encode_payload(message)
    return (
        network.magic
        + command.ljust(_COMMAND_SIZE, b"\x00")
        + struct.pack("<I", len(payload))
        + _checksum(payload)
        + payload
    )


def verify_network_message(message: NetworkMessage) -> bool:
    """Check what can be checked locally; blocks must match their commitments."""
    if message.command == "block" and isinstance(message.payload, Block):
        return message.payload.check_merkle_root() and message.payload.check_witness_commitment()
    return True


@dataclass
class V1OutboundMessage:
    """Builds plaintext messages for one network."""

    network: Network

    def _frame(self, command: str, payload: object = None) -> bytes:
        return frame_message(self.network, NetworkMessage(command, payload))

    def version_message(self, port: Optional[int] = None) -> bytes:
        return self._frame("version", make_version(port, self.network))

    def verack(self) -> bytes:
        return self._frame("verack")

    def addr(self) -> bytes:
        return self._frame("getaddr")

    def addrv2(self) -> bytes:
        return self._frame("sendaddrv2")

    def wtxid_relay(self) -> bytes:
        return self._frame("wtxidrelay")

    def headers(self, locator_hashes: Iterable[bytes], stop_hash: Optional[bytes] = None) -> bytes:
        request = GetHeadersMessage(
            GETHEADERS_VERSION,
            tuple(locator_hashes),
            stop_hash if stop_hash is not None else ZERO_HASH,
        )
        return self._frame("getheaders", request)

    def cf_headers(self, message: GetCFHeaders) -> bytes:
        return self._frame("getcfheaders", message)

    def filters(self, message: GetCFilters) -> bytes:
        return self._frame("getcfilters", message)

    def block(self, block_hashes: Iterable[bytes]) -> bytes:
        inventory = [Inventory(InventoryType.WITNESS_BLOCK, h) for h in block_hashes]
        return self._frame("getdata", inventory)

    def tx(self, txids: Iterable[bytes]) -> bytes:
        inventory = [Inventory(InventoryType.WITNESS_TX, txid) for txid in txids]
        return self._frame("getdata", inventory)

    def pong(self, nonce: int) -> bytes:
        return self._frame("pong", nonce)

    def announce_transaction(self, wtxid: bytes) -> bytes:
        return self._frame("inv", [Inventory(InventoryType.WTX, wtxid)])

    def broadcast_transaction(self, transaction: Transaction) -> bytes:
        return self._frame("tx", transaction)


def _decode_checked(header: V1Header, payload: bytes) -> NetworkMessage:
    if _checksum(payload) != header.checksum:
        raise PeerReadError(PeerReadErrorKind.DESERIALIZATION)
    try:
        message = decode_payload(header.command, payload)
    except (ValueError, struct.error) as exc:
        raise PeerReadError(PeerReadErrorKind.DESERIALIZATION) from exc
    if not verify_network_message(message):
        raise PeerReadError(PeerReadErrorKind.DESERIALIZATION)
    return message


class V1MessageParser:
    """Reads plaintext messages off a stream."""

    def __init__(self, stream: asyncio.StreamReader, network: Network) -> None:
        self.stream = stream
        self.network = network
        self._lock = asyncio.Lock()

    async def _read_exactly(self, count: int) -> bytes:
        try:
            return await self.stream.readexactly(count)
        except (asyncio.IncompleteReadError, OSError) as exc:
            raise PeerReadError(PeerReadErrorKind.READ_BUFFER) from exc

    async def read_message(self) -> Optional[NetworkMessage]:
        """Read the next message; raises PeerReadError on any failure."""
        async with self._lock:
            header = V1Header.decode(await self._read_exactly(HEADER_SIZE))
            if header.magic != self.network.magic:
                raise PeerReadError(PeerReadErrorKind.DESERIALIZATION)
            if header.length > MAX_MESSAGE_BYTES:
                raise PeerReadError(PeerReadErrorKind.DESERIALIZATION)
            payload = await self._read_exactly(header.length)
        return await asyncio.to_thread(_decode_checked, header, payload)