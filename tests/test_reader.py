import asyncio
import ipaddress

import pytest

from yuki.errors import PeerReadError, PeerReadErrorKind
from yuki.messages import (
    ZERO_HASH,
    AddrV2Entry,
    BlockHeader,
    CFHeaders,
    CFilter,
    Inventory,
    InventoryType,
    NetAddress,
    NetworkMessage,
    RejectMessage,
    ServiceFlags,
    Transaction,
    TxIn,
    TxOut,
)
from yuki.prelude import AddrKind, AddrV2, Network
from yuki.reader import (
    MAX_ADDR,
    MAX_HEADERS,
    MAX_INV,
    CombinedAddr,
    PeerMessage,
    PeerMessageKind,
    Reader,
    RejectPayload,
)
from yuki.wire import V1MessageParser, V1OutboundMessage


class _ScriptedParser:
    def __init__(self, messages):
        self._messages = list(messages)

    async def read_message(self):
        if not self._messages:
            raise PeerReadError(PeerReadErrorKind.READ_BUFFER)
        return self._messages.pop(0)


def _reader():
    return Reader(_ScriptedParser([]), asyncio.Queue())


def _header():
    return BlockHeader(1, ZERO_HASH, b"\x01" * 32, 1_600_000_000, 0x207FFFFF, 0)


def _tx():
    return Transaction(1, (TxIn(ZERO_HASH, 0xFFFFFFFF, b"\x01"),), (TxOut(1, b"\x51"),))


def test_addr_filters_services_and_onion():
    entries = [
        (0, NetAddress(ServiceFlags.NETWORK, ipaddress.IPv4Address("10.0.0.1"), 8333)),
        (0, NetAddress(ServiceFlags.NONE, ipaddress.IPv4Address("10.0.0.2"), 8333)),
        (0, NetAddress(ServiceFlags.NETWORK, ipaddress.IPv6Address("fd87:d87e:eb43::1"), 8333)),
        (0, NetAddress(ServiceFlags.NETWORK | ServiceFlags.WITNESS,
                       ipaddress.IPv6Address("2001:db8::1"), 18333)),
    ]
    result = _reader().parse_message(NetworkMessage("addr", entries))
    assert result.kind is PeerMessageKind.ADDR
    assert [(a.addr, a.port) for a in result.payload] == [
        (AddrV2(AddrKind.IPV4, ipaddress.IPv4Address("10.0.0.1")), 8333),
        (AddrV2(AddrKind.IPV6, ipaddress.IPv6Address("2001:db8::1")), 18333),
    ]


def test_addr_all_filtered_is_none():
    entries = [(0, NetAddress(ServiceFlags.NONE, ipaddress.IPv4Address("10.0.0.2"), 8333))]
    assert _reader().parse_message(NetworkMessage("addr", entries)) is None


def test_addr_too_many_disconnects():
    entry = (0, NetAddress(ServiceFlags.NETWORK, ipaddress.IPv4Address("10.0.0.1"), 8333))
    result = _reader().parse_message(NetworkMessage("addr", [entry] * (MAX_ADDR + 1)))
    assert result == PeerMessage(PeerMessageKind.DISCONNECT)


def test_addrv2_keeps_services():
    tor = AddrV2(AddrKind.TORV3, b"\x02" * 32)
    entries = [
        AddrV2Entry(0, ServiceFlags.NETWORK | ServiceFlags.P2P_V2, tor, 8333),
        AddrV2Entry(0, ServiceFlags.WITNESS, AddrV2(AddrKind.IPV4, "10.1.1.1"), 8333),
    ]
    result = _reader().parse_message(NetworkMessage("addrv2", entries))
    assert result.payload == [CombinedAddr(tor, 8333, ServiceFlags.NETWORK | ServiceFlags.P2P_V2)]


def test_addrv2_too_many_disconnects():
    entry = AddrV2Entry(0, ServiceFlags.NETWORK, AddrV2(AddrKind.IPV4, "10.1.1.1"), 8333)
    result = _reader().parse_message(NetworkMessage("addrv2", [entry] * (MAX_ADDR + 1)))
    assert result.kind is PeerMessageKind.DISCONNECT


def test_inv_collects_block_hashes():
    inventory = [
        Inventory(InventoryType.BLOCK, b"\x01" * 32),
        Inventory(InventoryType.TX, b"\x02" * 32),
        Inventory(InventoryType.COMPACT_BLOCK, b"\x03" * 32),
        Inventory(InventoryType.WITNESS_BLOCK, b"\x04" * 32),
    ]
    result = _reader().parse_message(NetworkMessage("inv", inventory))
    assert result == PeerMessage(PeerMessageKind.NEW_BLOCKS, [b"\x01" * 32, b"\x03" * 32, b"\x04" * 32])


def test_inv_without_blocks_is_none():
    inventory = [Inventory(InventoryType.TX, b"\x02" * 32)]
    assert _reader().parse_message(NetworkMessage("inv", inventory)) is None


def test_inv_too_many_disconnects():
    inventory = [Inventory(InventoryType.BLOCK, b"\x01" * 32)] * (MAX_INV + 1)
    assert _reader().parse_message(NetworkMessage("inv", inventory)).kind is PeerMessageKind.DISCONNECT


def test_getdata_collects_wtx_requests():
    inventory = [Inventory(InventoryType.WTX, b"\x05" * 32), Inventory(InventoryType.TX, b"\x06" * 32)]
    result = _reader().parse_message(NetworkMessage("getdata", inventory))
    assert result == PeerMessage(PeerMessageKind.TX_REQUESTS, [b"\x05" * 32])


def test_getdata_without_wtx_is_empty_request():
    result = _reader().parse_message(NetworkMessage("getdata", []))
    assert result == PeerMessage(PeerMessageKind.TX_REQUESTS, [])


def test_headers_and_limit():
    reader = _reader()
    headers = [_header()] * 3
    assert reader.parse_message(NetworkMessage("headers", headers)) == PeerMessage(
        PeerMessageKind.HEADERS, headers
    )
    too_many = [_header()] * (MAX_HEADERS + 1)
    assert reader.parse_message(NetworkMessage("headers", too_many)).kind is PeerMessageKind.DISCONNECT


@pytest.mark.parametrize(
    "command, payload, kind",
    [
        ("ping", 7, PeerMessageKind.PING),
        ("pong", 8, PeerMessageKind.PONG),
        ("cfilter", CFilter(0, b"\x01" * 32, b"\x02\x03"), PeerMessageKind.FILTER),
        ("cfheaders", CFHeaders(0, b"\x01" * 32, b"\x02" * 32, ()), PeerMessageKind.FILTER_HEADERS),
        ("notfound", [Inventory(InventoryType.TX, b"\x02" * 32)], PeerMessageKind.NOT_FOUND),
    ],
)
def test_passthrough_messages(command, payload, kind):
    result = _reader().parse_message(NetworkMessage(command, payload))
    assert result == PeerMessage(kind, payload)


def test_tx_passthrough():
    tx = _tx()
    assert _reader().parse_message(NetworkMessage("tx", tx)) == PeerMessage(PeerMessageKind.TX, tx)


def test_verack():
    assert _reader().parse_message(NetworkMessage("verack")).kind is PeerMessageKind.VERACK


def test_reject_payload():
    reject = RejectMessage("tx", 0x10, "bad-txns", b"\x0a" * 32)
    result = _reader().parse_message(NetworkMessage("reject", reject))
    assert result == PeerMessage(PeerMessageKind.REJECT, RejectPayload(reason=0x10, txid=b"\x0a" * 32))


def test_feefilter_rate_and_negative():
    reader = _reader()
    assert reader.parse_message(NetworkMessage("feefilter", 4000)) == PeerMessage(
        PeerMessageKind.FEE_FILTER, 1000
    )
    assert reader.parse_message(NetworkMessage("feefilter", -1)).kind is PeerMessageKind.DISCONNECT


@pytest.mark.parametrize(
    "command",
    ["getaddr", "mempool", "sendheaders", "wtxidrelay", "sendaddrv2", "filterclear", "alert"],
)
def test_ignored_messages(command):
    payload = b"" if command == "alert" else None
    assert _reader().parse_message(NetworkMessage(command, payload)) is None


def test_unknown_command_disconnects():
    result = _reader().parse_message(NetworkMessage("mystery", b"abc"))
    assert result == PeerMessage(PeerMessageKind.DISCONNECT)


@pytest.mark.asyncio
async def test_read_from_remote_forwards_until_error():
    queue = asyncio.Queue()
    parser = _ScriptedParser([
        NetworkMessage("verack"),
        NetworkMessage("getaddr"),
        None,
        NetworkMessage("ping", 7),
    ])
    with pytest.raises(PeerReadError) as info:
        await Reader(parser, queue).read_from_remote()
    assert info.value.kind is PeerReadErrorKind.READ_BUFFER
    assert queue.get_nowait() == PeerMessage(PeerMessageKind.VERACK)
    assert queue.get_nowait() == PeerMessage(PeerMessageKind.PING, 7)
    assert queue.empty()


@pytest.mark.asyncio
async def test_read_from_remote_over_stream():
    outbound = V1OutboundMessage(Network.REGTEST)
    stream = asyncio.StreamReader()
    stream.feed_data(outbound.pong(3) + outbound.wtxid_relay())
    stream.feed_eof()
    queue = asyncio.Queue()
    with pytest.raises(PeerReadError):
        await Reader(V1MessageParser(stream, Network.REGTEST), queue).read_from_remote()
    assert queue.get_nowait() == PeerMessage(PeerMessageKind.PONG, 3)
    assert queue.empty()