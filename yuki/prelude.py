"""Shared helpers: network parameters, median, netgroups and DNS name encoding."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass
from typing import Iterable, Union

MAX_FUTURE_BLOCK_TIME = 60 * 60 * 2
MEDIAN_TIME_PAST = 11


class Network(enum.Enum):
    """Bitcoin networks the node can run on."""

    BITCOIN = "bitcoin"
    TESTNET = "testnet"
    TESTNET4 = "testnet4"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def magic(self) -> bytes:
        """The four message-start bytes used on the wire for this network."""
        return _MAGIC[self]


_MAGIC = {
    Network.BITCOIN: bytes.fromhex("f9beb4d9"),
    Network.TESTNET: bytes.fromhex("0b110907"),
    Network.TESTNET4: bytes.fromhex("1c163f28"),
    Network.SIGNET: bytes.fromhex("0a03cf40"),
    Network.REGTEST: bytes.fromhex("fabfb5da"),
}

_DEFAULT_PORTS = {
    Network.BITCOIN: 8333,
    Network.TESTNET: 18333,
    Network.TESTNET4: 48333,
    Network.SIGNET: 38333,
    Network.REGTEST: 18444,
}


class AddrKind(enum.Enum):
    """The address families of a version 2 peer address."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"
    TORV2 = "torv2"
    TORV3 = "torv3"
    I2P = "i2p"
    CJDNS = "cjdns"
    UNKNOWN = "unknown"


_IP_TYPES = {
    AddrKind.IPV4: ipaddress.IPv4Address,
    AddrKind.IPV6: ipaddress.IPv6Address,
    AddrKind.CJDNS: ipaddress.IPv6Address,
}

_BYTE_LENGTHS = {
    AddrKind.TORV2: 10,
    AddrKind.TORV3: 32,
    AddrKind.I2P: 32,
}

AddressValue = Union[ipaddress.IPv4Address, ipaddress.IPv6Address, bytes]


@dataclass(frozen=True)
class AddrV2:
    """A peer address of any family; ``network_id`` only matters for unknown ones."""

    kind: AddrKind
    address: AddressValue
    network_id: int = 0

    def __post_init__(self) -> None:
        ip_type = _IP_TYPES.get(self.kind)
        if ip_type is not None:
            if isinstance(self.address, (str, int)):
                object.__setattr__(self, "address", ip_type(self.address))
            if not isinstance(self.address, ip_type):
                raise TypeError(f"{self.kind.value} address must be {ip_type.__name__}")
            return
        if not isinstance(self.address, (bytes, bytearray)):
            raise TypeError(f"{self.kind.value} address must be bytes")
        object.__setattr__(self, "address", bytes(self.address))
        expected = _BYTE_LENGTHS.get(self.kind)
        if expected is not None and len(self.address) != expected:
            raise ValueError(f"{self.kind.value} address must be {expected} bytes")


def median(values: Iterable[int]) -> int:
    """Median of integers; the mean of the two middle values truncates toward zero."""
    ordered = sorted(values)
    length = len(ordered)
    if length == 0:
        return 0
    if length % 2 == 1:
        return ordered[length // 2]
    total = ordered[length // 2 - 1] + ordered[length // 2]
    half = abs(total) // 2
    return half if total >= 0 else -half


def _ipv6_group(ip: ipaddress.IPv6Address) -> str:
    parts = str(ip).replace("::", ".").split(".")
    return "::".join(parts[:4])


def netgroup(addr: AddrV2) -> str:
    """The group a peer address belongs to, used to diversify connections."""
    if addr.kind is AddrKind.IPV4:
        return ".".join(str(addr.address).split(".")[:2])
    if addr.kind in (AddrKind.IPV6, AddrKind.CJDNS):
        return _ipv6_group(addr.address)  # type: ignore[arg-type]
    if addr.kind in (AddrKind.TORV2, AddrKind.TORV3, AddrKind.I2P):
        return addr.address.hex()  # type: ignore[union-attr]
    return "UNKNOWN"


def default_port_from_network(network: Network) -> int:
    """The default peer-to-peer port of a network."""
    return _DEFAULT_PORTS[network]


def encode_qname(domain: str) -> bytes:
    """Encode a domain name as a DNS question name of length-prefixed labels."""
    encoded = bytearray()
    for label in domain.split("."):
        raw = label.encode("utf-8")
        encoded.append(len(raw) & 0xFF)
        encoded.extend(raw)
    encoded.append(0x00)
    return bytes(encoded)