"""Bitcoin peer-to-peer message payloads: data types and their wire encoding."""

from __future__ import annotations

import enum
import hashlib
import ipaddress
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .prelude import AddrKind, AddrV2

ZERO_HASH = bytes(32)
_WITNESS_MAGIC = bytes.fromhex("6a24aa21a9ed")

IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def double_sha256(data: bytes) -> bytes:
    """SHA-256 applied twice, as used for Bitcoin hashes."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


class _ByteReader:
    """Sequential reader over a byte string that raises ValueError on truncation."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    def read(self, count: int) -> bytes:
        end = self._pos + count
        if count < 0 or end > len(self._data):
            raise ValueError("unexpected end of data")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def unpack(self, fmt: str) -> int:
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))[0]

    def compact_size(self) -> int:
        first = self.read(1)[0]
        if first < 0xFD:
            return first
        if first == 0xFD:
            return self.unpack("<H")
        if first == 0xFE:
            return self.unpack("<I")
        return self.unpack("<Q")

    def var_bytes(self) -> bytes:
        return self.read(self.compact_size())

    def var_str(self) -> str:
        return self.var_bytes().decode("utf-8", errors="replace")

    def hash(self) -> bytes:
        return self.read(32)

    @property
    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def rest(self) -> bytes:
        chunk = self._data[self._pos:]
        self._pos = len(self._data)
        return chunk

    def finish(self) -> None:
        if not self.at_end:
            raise ValueError("trailing data after message payload")


def _compact_size(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def _var_bytes(data: bytes) -> bytes:
    return _compact_size(len(data)) + data


def _var_str(text: str) -> bytes:
    return _var_bytes(text.encode("utf-8"))


class ServiceFlags(enum.IntFlag):
    """Services a peer advertises."""

    NONE = 0
    NETWORK = 1
    GETUTXO = 1 << 1
    BLOOM = 1 << 2
    WITNESS = 1 << 3
    COMPACT_FILTERS = 1 << 6
    NETWORK_LIMITED = 1 << 10
    P2P_V2 = 1 << 11

    def has(self, flags: "ServiceFlags") -> bool:
        return (self & flags) == flags


class InventoryType(enum.IntEnum):
    """Inventory vector object types."""

    ERROR = 0
    TX = 1
    BLOCK = 2
    FILTERED_BLOCK = 3
    COMPACT_BLOCK = 4
    WTX = 5
    WITNESS_TX = 0x40000001
    WITNESS_BLOCK = 0x40000002
    WITNESS_FILTERED_BLOCK = 0x40000003


@dataclass(frozen=True)
class Inventory:
    """One inventory vector; unrecognised types keep their raw number."""

    kind: Union[InventoryType, int]
    hash: bytes

    def encode(self) -> bytes:
        return struct.pack("<I", int(self.kind)) + self.hash

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "Inventory":
        raw = reader.unpack("<I")
        try:
            kind: Union[InventoryType, int] = InventoryType(raw)
        except ValueError:
            kind = raw
        return cls(kind, reader.hash())


@dataclass(frozen=True)
class NetAddress:
    """A version 1 network address: services, IP and port."""

    services: ServiceFlags
    address: IpAddress
    port: int

    def encode(self) -> bytes:
        if isinstance(self.address, ipaddress.IPv4Address):
            packed = ipaddress.IPv6Address("::ffff:" + str(self.address)).packed
        else:
            packed = self.address.packed
        return struct.pack("<Q", int(self.services)) + packed + struct.pack(">H", self.port)

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "NetAddress":
        services = ServiceFlags(reader.unpack("<Q"))
        ip6 = ipaddress.IPv6Address(reader.read(16))
        address: IpAddress = ip6.ipv4_mapped or ip6
        port = reader.unpack(">H")
        return cls(services, address, port)


_NET_IDS = {
    AddrKind.IPV4: 1,
    AddrKind.IPV6: 2,
    AddrKind.TORV2: 3,
    AddrKind.TORV3: 4,
    AddrKind.I2P: 5,
    AddrKind.CJDNS: 6,
}
_KINDS_BY_ID = {value: key for key, value in _NET_IDS.items()}
_IP_LENGTHS = {AddrKind.IPV4: 4, AddrKind.IPV6: 16, AddrKind.CJDNS: 16}


@dataclass(frozen=True)
class AddrV2Entry:
    """One entry of an ``addrv2`` message."""

    time: int
    services: ServiceFlags
    addr: AddrV2
    port: int

    def encode(self) -> bytes:
        kind = self.addr.kind
        if kind in _IP_LENGTHS:
            raw = self.addr.address.packed  # type: ignore[union-attr]
        else:
            raw = bytes(self.addr.address)  # type: ignore[arg-type]
        net_id = _NET_IDS.get(kind, self.addr.network_id)
        return (
            struct.pack("<I", self.time)
            + _compact_size(int(self.services))
            + bytes([net_id])
            + _var_bytes(raw)
            + struct.pack(">H", self.port)
        )

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "AddrV2Entry":
        time = reader.unpack("<I")
        services = ServiceFlags(reader.compact_size())
        net_id = reader.read(1)[0]
        raw = reader.var_bytes()
        port = reader.unpack(">H")
        kind = _KINDS_BY_ID.get(net_id, AddrKind.UNKNOWN)
        if kind in _IP_LENGTHS:
            if len(raw) != _IP_LENGTHS[kind]:
                raise ValueError(f"invalid {kind.value} address length")
            ip_type = ipaddress.IPv4Address if kind is AddrKind.IPV4 else ipaddress.IPv6Address
            addr = AddrV2(kind, ip_type(raw))
        elif kind is AddrKind.UNKNOWN:
            addr = AddrV2(kind, raw, net_id)
        else:
            addr = AddrV2(kind, raw)
        return cls(time, services, addr, port)


@dataclass(frozen=True)
class VersionMessage:
    """The ``version`` handshake message."""

    version: int
    services: ServiceFlags
    timestamp: int
    receiver: NetAddress
    sender: NetAddress
    nonce: int
    user_agent: str
    start_height: int
    relay: bool

    def encode(self) -> bytes:
        return (
            struct.pack("<iQq", self.version, int(self.services), self.timestamp)
            + self.receiver.encode()
            + self.sender.encode()
            + struct.pack("<Q", self.nonce)
            + _var_str(self.user_agent)
            + struct.pack("<i", self.start_height)
            + bytes([1 if self.relay else 0])
        )

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "VersionMessage":
        version = reader.unpack("<i")
        services = ServiceFlags(reader.unpack("<Q"))
        timestamp = reader.unpack("<q")
        receiver = NetAddress._decode(reader)
        sender = NetAddress._decode(reader)
        nonce = reader.unpack("<Q")
        user_agent = reader.var_str()
        start_height = reader.unpack("<i")
        relay = False if reader.at_end else reader.read(1)[0] != 0
        return cls(version, services, timestamp, receiver, sender, nonce,
                   user_agent, start_height, relay)


@dataclass(frozen=True)
class GetHeadersMessage:
    """A ``getheaders`` or ``getblocks`` request."""

    version: int
    locator_hashes: Tuple[bytes, ...]
    stop_hash: bytes = ZERO_HASH

    def encode(self) -> bytes:
        return (
            struct.pack("<I", self.version)
            + _compact_size(len(self.locator_hashes))
            + b"".join(self.locator_hashes)
            + self.stop_hash
        )

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "GetHeadersMessage":
        version = reader.unpack("<I")
        hashes = tuple(reader.hash() for _ in range(reader.compact_size()))
        return cls(version, hashes, reader.hash())


@dataclass(frozen=True)
class GetCFHeaders:
    """A ``getcfheaders`` request."""

    filter_type: int
    start_height: int
    stop_hash: bytes

    def encode(self) -> bytes:
        return bytes([self.filter_type]) + struct.pack("<I", self.start_height) + self.stop_hash

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "GetCFHeaders":
        return cls(reader.read(1)[0], reader.unpack("<I"), reader.hash())


@dataclass(frozen=True)
class GetCFilters:
    """A ``getcfilters`` request."""

    filter_type: int
    start_height: int
    stop_hash: bytes

    def encode(self) -> bytes:
        return bytes([self.filter_type]) + struct.pack("<I", self.start_height) + self.stop_hash

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "GetCFilters":
        return cls(reader.read(1)[0], reader.unpack("<I"), reader.hash())


@dataclass(frozen=True)
class CFilter:
    """A compact block filter."""

    filter_type: int
    block_hash: bytes
    filter: bytes

    def encode(self) -> bytes:
        return bytes([self.filter_type]) + self.block_hash + _var_bytes(self.filter)

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "CFilter":
        return cls(reader.read(1)[0], reader.hash(), reader.var_bytes())


@dataclass(frozen=True)
class CFHeaders:
    """A batch of compact filter hashes."""

    filter_type: int
    stop_hash: bytes
    previous_filter_header: bytes
    filter_hashes: Tuple[bytes, ...]

    def encode(self) -> bytes:
        return (
            bytes([self.filter_type])
            + self.stop_hash
            + self.previous_filter_header
            + _compact_size(len(self.filter_hashes))
            + b"".join(self.filter_hashes)
        )

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "CFHeaders":
        filter_type = reader.read(1)[0]
        stop_hash = reader.hash()
        previous = reader.hash()
        hashes = tuple(reader.hash() for _ in range(reader.compact_size()))
        return cls(filter_type, stop_hash, previous, hashes)


@dataclass(frozen=True)
class RejectMessage:
    """A ``reject`` message."""

    message: str
    ccode: int
    reason: str
    hash: bytes

    def encode(self) -> bytes:
        return _var_str(self.message) + bytes([self.ccode]) + _var_str(self.reason) + self.hash

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "RejectMessage":
        return cls(reader.var_str(), reader.read(1)[0], reader.var_str(), reader.hash())


@dataclass(frozen=True)
class TxIn:
    """A transaction input."""

    previous_txid: bytes
    previous_vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: Tuple[bytes, ...] = ()


@dataclass(frozen=True)
class TxOut:
    """A transaction output."""

    value: int
    script_pubkey: bytes


@dataclass(frozen=True)
class Transaction:
    """A Bitcoin transaction."""

    version: int
    inputs: Tuple[TxIn, ...]
    outputs: Tuple[TxOut, ...]
    lock_time: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "Transaction":
        reader = _ByteReader(data)
        tx = cls._decode(reader)
        reader.finish()
        return tx

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "Transaction":
        version = reader.unpack("<i")
        count = reader.compact_size()
        segwit = False
        if count == 0:
            if reader.read(1)[0] != 1:
                raise ValueError("unsupported segwit flag")
            segwit = True
            count = reader.compact_size()
        raw_inputs = [
            (reader.hash(), reader.unpack("<I"), reader.var_bytes(), reader.unpack("<I"))
            for _ in range(count)
        ]
        outputs = tuple(
            TxOut(reader.unpack("<q"), reader.var_bytes())
            for _ in range(reader.compact_size())
        )
        witnesses: List[Tuple[bytes, ...]] = [()] * len(raw_inputs)
        if segwit:
            witnesses = [
                tuple(reader.var_bytes() for _ in range(reader.compact_size()))
                for _ in raw_inputs
            ]
            if not any(witnesses):
                raise ValueError("segwit flag set without witness data")
        lock_time = reader.unpack("<I")
        inputs = tuple(
            TxIn(txid, vout, script, seq, witness)
            for (txid, vout, script, seq), witness in zip(raw_inputs, witnesses)
        )
        return cls(version, inputs, outputs, lock_time)

    @property
    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness
        parts = [struct.pack("<i", self.version)]
        if with_witness:
            parts.append(b"\x00\x01")
        parts.append(_compact_size(len(self.inputs)))
        for txin in self.inputs:
            parts.append(txin.previous_txid + struct.pack("<I", txin.previous_vout)
                         + _var_bytes(txin.script_sig) + struct.pack("<I", txin.sequence))
        parts.append(_compact_size(len(self.outputs)))
        for txout in self.outputs:
            parts.append(struct.pack("<q", txout.value) + _var_bytes(txout.script_pubkey))
        if with_witness:
            for txin in self.inputs:
                parts.append(_compact_size(len(txin.witness)))
                parts.extend(_var_bytes(item) for item in txin.witness)
        parts.append(struct.pack("<I", self.lock_time))
        return b"".join(parts)

    def txid(self) -> bytes:
        return double_sha256(self.serialize(include_witness=False))

    def wtxid(self) -> bytes:
        return double_sha256(self.serialize(include_witness=True))

    def is_coinbase(self) -> bool:
        return (
            len(self.inputs) == 1
            and self.inputs[0].previous_txid == ZERO_HASH
            and self.inputs[0].previous_vout == 0xFFFFFFFF
        )


@dataclass(frozen=True)
class BlockHeader:
    """An 80-byte block header."""

    version: int
    prev_blockhash: bytes
    merkle_root: bytes
    time: int
    bits: int
    nonce: int

    def encode(self) -> bytes:
        return (
            struct.pack("<i", self.version)
            + self.prev_blockhash
            + self.merkle_root
            + struct.pack("<III", self.time, self.bits, self.nonce)
        )

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "BlockHeader":
        version = reader.unpack("<i")
        prev = reader.hash()
        root = reader.hash()
        time, bits, nonce = struct.unpack("<III", reader.read(12))
        return cls(version, prev, root, time, bits, nonce)

    def block_hash(self) -> bytes:
        return double_sha256(self.encode())


def _merkle_root(hashes: List[bytes]) -> Optional[bytes]:
    if not hashes:
        return None
    level = list(hashes)
    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        level = [double_sha256(left + right) for left, right in zip(level[::2], level[1::2])]
    return level[0]


@dataclass(frozen=True)
class Block:
    """A block: header and transactions."""

    header: BlockHeader
    transactions: Tuple[Transaction, ...]

    def encode(self) -> bytes:
        return (
            self.header.encode()
            + _compact_size(len(self.transactions))
            + b"".join(tx.serialize() for tx in self.transactions)
        )

    @classmethod
    def _decode(cls, reader: _ByteReader) -> "Block":
        header = BlockHeader._decode(reader)
        txs = tuple(Transaction._decode(reader) for _ in range(reader.compact_size()))
        return cls(header, txs)

    def check_merkle_root(self) -> bool:
        root = _merkle_root([tx.txid() for tx in self.transactions])
        return root is not None and root == self.header.merkle_root

    def check_witness_commitment(self) -> bool:
        if not any(tx.has_witness for tx in self.transactions):
            return True
        coinbase = self.transactions[0]
        if not coinbase.is_coinbase():
            return False
        commitments = [
            out.script_pubkey[6:38]
            for out in coinbase.outputs
            if len(out.script_pubkey) >= 38 and out.script_pubkey[:6] == _WITNESS_MAGIC
        ]
        if not commitments:
            return False
        witness = coinbase.inputs[0].witness
        if len(witness) != 1 or len(witness[0]) != 32:
            return False
        root = _merkle_root([ZERO_HASH] + [tx.wtxid() for tx in self.transactions[1:]])
        if root is None:
            return False
        return commitments[-1] == double_sha256(root + witness[0])


@dataclass(frozen=True)
class NetworkMessage:
    """A peer message: its command name and decoded payload."""

    command: str
    payload: Any = None

    @property
    def is_known(self) -> bool:
        return self.command in KNOWN_COMMANDS


def _encode_list(items: Any, encode: Callable[[Any], bytes]) -> bytes:
    items = list(items)
    return _compact_size(len(items)) + b"".join(encode(item) for item in items)


def _decode_list(reader: _ByteReader, decode: Callable[[_ByteReader], Any]) -> List[Any]:
    return [decode(reader) for _ in range(reader.compact_size())]


def _decode_addr(reader: _ByteReader) -> Tuple[int, NetAddress]:
    return reader.unpack("<I"), NetAddress._decode(reader)


def _decode_headers(reader: _ByteReader) -> List[BlockHeader]:
    headers = []
    for _ in range(reader.compact_size()):
        headers.append(BlockHeader._decode(reader))
        if reader.compact_size() != 0:
            raise ValueError("headers message should not contain transactions")
    return headers


_EMPTY_COMMANDS = frozenset({
    "verack", "getaddr", "mempool", "sendheaders", "filterclear", "wtxidrelay", "sendaddrv2",
})

_RAW_COMMANDS = frozenset({
    "merkleblock", "filterload", "filteradd", "getcfcheckpt", "cfcheckpt", "sendcmpct",
    "cmpctblock", "getblocktxn", "blocktxn", "alert",
})

_ENCODERS: Dict[str, Callable[[Any], bytes]] = {
    "version": lambda p: p.encode(),
    "addr": lambda p: _encode_list(p, lambda e: struct.pack("<I", e[0]) + e[1].encode()),
    "addrv2": lambda p: _encode_list(p, lambda e: e.encode()),
    "inv": lambda p: _encode_list(p, lambda e: e.encode()),
    "getdata": lambda p: _encode_list(p, lambda e: e.encode()),
    "notfound": lambda p: _encode_list(p, lambda e: e.encode()),
    "getblocks": lambda p: p.encode(),
    "getheaders": lambda p: p.encode(),
    "tx": lambda p: p.serialize(),
    "block": lambda p: p.encode(),
    "headers": lambda p: _encode_list(p, lambda h: h.encode() + b"\x00"),
    "ping": lambda p: struct.pack("<Q", p),
    "pong": lambda p: struct.pack("<Q", p),
    "feefilter": lambda p: struct.pack("<q", p),
    "getcfilters": lambda p: p.encode(),
    "cfilter": lambda p: p.encode(),
    "getcfheaders": lambda p: p.encode(),
    "cfheaders": lambda p: p.encode(),
    "reject": lambda p: p.encode(),
}

_DECODERS: Dict[str, Callable[[_ByteReader], Any]] = {
    "version": VersionMessage._decode,
    "addr": lambda r: _decode_list(r, _decode_addr),
    "addrv2": lambda r: _decode_list(r, AddrV2Entry._decode),
    "inv": lambda r: _decode_list(r, Inventory._decode),
    "getdata": lambda r: _decode_list(r, Inventory._decode),
    "notfound": lambda r: _decode_list(r, Inventory._decode),
    "getblocks": GetHeadersMessage._decode,
    "getheaders": GetHeadersMessage._decode,
    "tx": Transaction._decode,
    "block": Block._decode,
    "headers": _decode_headers,
    "ping": lambda r: r.unpack("<Q"),
    "pong": lambda r: r.unpack("<Q"),
    "feefilter": lambda r: r.unpack("<q"),
    "getcfilters": GetCFilters._decode,
    "cfilter": CFilter._decode,
    "getcfheaders": GetCFHeaders._decode,
    "cfheaders": CFHeaders._decode,
    "reject": RejectMessage._decode,
}

KNOWN_COMMANDS = frozenset(_ENCODERS) | _EMPTY_COMMANDS | _RAW_COMMANDS


def encode_payload(message: NetworkMessage) -> bytes:
    """Serialize the payload of a message."""
    if message.command in _EMPTY_COMMANDS:
        return b""
    encoder = _ENCODERS.get(message.command)
    if encoder is None:
        return bytes(message.payload or b"")
    return encoder(message.payload)


def decode_payload(command: str, data: bytes) -> NetworkMessage:
    """Parse a payload for a command; raises ValueError on malformed data."""
    reader = _ByteReader(data)
    if command in _EMPTY_COMMANDS:
        reader.finish()
        return NetworkMessage(command)
    decoder = _DECODERS.get(command)
    if decoder is None:
        return NetworkMessage(command, reader.rest())
    payload = decoder(reader)
    reader.finish()
    return NetworkMessage(command, payload)