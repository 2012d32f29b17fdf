import asyncio
import struct
import time

import pytest

from yuki.errors import PeerReadError, PeerReadErrorKind
from yuki.messages import (
    ZERO_HASH,
    Block,
    BlockHeader,
    GetCFHeaders,
    GetCFilters,
    InventoryType,
    NetworkMessage,
    ServiceFlags,
    Transaction,
    TxIn,
    TxOut,
    decode_payload,
    double_sha256,
)
from yuki.prelude import Network, default_port_from_network
from yuki.wire import (
    GETHEADERS_VERSION,
    HEADER_SIZE,
    MAX_MESSAGE_BYTES,
    PROTOCOL_VERSION,
    YUKI_VERSION,
    V1Header,
    V1MessageParser,
    V1OutboundMessage,
    frame_message,
    make_version,
    verify_network_message,
)


def _coinbase():
    return Transaction(1, (TxIn(ZERO_HASH, 0xFFFFFFFF, b"\x01\x02"),), (TxOut(50, b"\x51"),))


def _block(valid=True):
    tx = _coinbase()
    root = tx.txid() if valid else bytes(32)
    header = BlockHeader(1, ZERO_HASH, root, 1_600_000_000, 0x207FFFFF, 0)
    return Block(header, (tx,))


def _payload(frame):
    header = V1Header.decode(frame)
    return decode_payload(header.command, frame[HEADER_SIZE:])


def _stream(data):
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


async def _read(data, network=Network.REGTEST):
    return await V1MessageParser(_stream(data), network).read_message()


def test_verack_frame_bytes():
    frame = V1OutboundMessage(Network.REGTEST).verack()
    expected = (
        Network.REGTEST.magic
        + b"verack"
        + bytes(6)
        + bytes(4)
        + bytes.fromhex("5df6e0e2")
    )
    assert frame == expected


def test_header_decode():
    frame = V1OutboundMessage(Network.SIGNET).pong(9)
    header = V1Header.decode(frame)
    assert header.magic == Network.SIGNET.magic
    assert header.command == "pong"
    assert header.length == len(frame) - HEADER_SIZE
    assert header.checksum == double_sha256(frame[HEADER_SIZE:])[:4]


def test_header_decode_too_short():
    with pytest.raises(ValueError):
        V1Header.decode(b"\x00" * 10)


def test_frame_rejects_long_command():
    with pytest.raises(ValueError):
        frame_message(Network.REGTEST, NetworkMessage("averyverylongcommand", b""))


def test_make_version_fields():
    before = int(time.time())
    msg = make_version(None, Network.REGTEST)
    after = int(time.time())
    assert msg.version == PROTOCOL_VERSION
    assert msg.user_agent == f"Yuki / {YUKI_VERSION}"
    assert msg.receiver.port == default_port_from_network(Network.REGTEST)
    assert msg.sender == msg.receiver
    assert msg.nonce == 1
    assert msg.relay is False
    assert msg.services == ServiceFlags.NONE
    assert before <= msg.timestamp <= after


def test_make_version_custom_port():
    assert make_version(1234, Network.BITCOIN).receiver.port == 1234


@pytest.mark.asyncio
async def test_version_message_roundtrip():
    frame = V1OutboundMessage(Network.TESTNET).version_message(None)
    message = await _read(frame, Network.TESTNET)
    assert message.command == "version"
    assert message.payload.version == PROTOCOL_VERSION
    assert message.payload.user_agent == "Yuki / 0.0.1"
    assert message.payload.receiver.port == default_port_from_network(Network.TESTNET)


def test_headers_default_stop_hash():
    locators = [b"\x11" * 32, b"\x22" * 32]
    message = _payload(V1OutboundMessage(Network.REGTEST).headers(locators, None))
    assert message.command == "getheaders"
    assert list(message.payload.locator_hashes) == locators
    assert message.payload.stop_hash == ZERO_HASH
    assert message.payload.version == GETHEADERS_VERSION


def test_headers_explicit_stop_hash():
    stop = b"\x33" * 32
    message = _payload(V1OutboundMessage(Network.REGTEST).headers([], stop))
    assert message.payload.stop_hash == stop


def test_block_request_uses_witness_inventory():
    hashes = [b"\x01" * 32, b"\x02" * 32]
    message = _payload(V1OutboundMessage(Network.REGTEST).block(hashes))
    assert message.command == "getdata"
    assert [inv.kind for inv in message.payload] == [InventoryType.WITNESS_BLOCK] * 2
    assert [inv.hash for inv in message.payload] == hashes


def test_tx_request_uses_witness_inventory():
    message = _payload(V1OutboundMessage(Network.REGTEST).tx([b"\x05" * 32]))
    assert message.payload[0].kind == InventoryType.WITNESS_TX
    assert message.payload[0].hash == b"\x05" * 32


def test_pong_carries_nonce():
    message = _payload(V1OutboundMessage(Network.REGTEST).pong(424242))
    assert message == NetworkMessage("pong", 424242)


def test_announce_transaction():
    wtxid = b"\x09" * 32
    message = _payload(V1OutboundMessage(Network.REGTEST).announce_transaction(wtxid))
    assert message.command == "inv"
    assert message.payload[0].kind == InventoryType.WTX
    assert message.payload[0].hash == wtxid


def test_broadcast_transaction_roundtrip():
    tx = _coinbase()
    message = _payload(V1OutboundMessage(Network.REGTEST).broadcast_transaction(tx))
    assert message.command == "tx"
    assert message.payload == tx


def test_filter_requests_roundtrip():
    outbound = V1OutboundMessage(Network.REGTEST)
    cfh = GetCFHeaders(0, 100, b"\x07" * 32)
    cf = GetCFilters(0, 200, b"\x08" * 32)
    assert _payload(outbound.cf_headers(cfh)).payload == cfh
    assert _payload(outbound.filters(cf)).payload == cf


@pytest.mark.parametrize(
    "method, command",
    [("addr", "getaddr"), ("addrv2", "sendaddrv2"), ("wtxid_relay", "wtxidrelay"), ("verack", "verack")],
)
def test_empty_messages(method, command):
    frame = getattr(V1OutboundMessage(Network.REGTEST), method)()
    header = V1Header.decode(frame)
    assert header.command == command
    assert header.length == 0


@pytest.mark.asyncio
async def test_parser_reads_sequential_messages():
    outbound = V1OutboundMessage(Network.REGTEST)
    parser = V1MessageParser(_stream(outbound.pong(1) + outbound.verack()), Network.REGTEST)
    first = await parser.read_message()
    second = await parser.read_message()
    assert first == NetworkMessage("pong", 1)
    assert second == NetworkMessage("verack")


@pytest.mark.asyncio
async def test_parser_rejects_wrong_magic():
    frame = V1OutboundMessage(Network.BITCOIN).verack()
    with pytest.raises(PeerReadError) as info:
        await _read(frame, Network.REGTEST)
    assert info.value.kind is PeerReadErrorKind.DESERIALIZATION


@pytest.mark.asyncio
async def test_parser_rejects_bad_checksum():
    frame = bytearray(V1OutboundMessage(Network.REGTEST).pong(5))
    frame[20] ^= 0xFF
    with pytest.raises(PeerReadError) as info:
        await _read(bytes(frame))
    assert info.value.kind is PeerReadErrorKind.DESERIALIZATION


@pytest.mark.asyncio
async def test_parser_rejects_oversized_message():
    frame = (
        Network.REGTEST.magic
        + b"ping".ljust(12, b"\x00")
        + struct.pack("<I", MAX_MESSAGE_BYTES + 1)
        + bytes(4)
    )
    with pytest.raises(PeerReadError) as info:
        await _read(frame)
    assert info.value.kind is PeerReadErrorKind.DESERIALIZATION


@pytest.mark.asyncio
async def test_parser_rejects_malformed_payload():
    payload = b"\x01\x02\x03"
    frame = (
        Network.REGTEST.magic
        + b"ping".ljust(12, b"\x00")
        + struct.pack("<I", len(payload))
        + double_sha256(payload)[:4]
        + payload
    )
    with pytest.raises(PeerReadError) as info:
        await _read(frame)
    assert info.value.kind is PeerReadErrorKind.DESERIALIZATION


@pytest.mark.asyncio
async def test_parser_truncated_stream():
    frame = V1OutboundMessage(Network.REGTEST).pong(5)[:-2]
    with pytest.raises(PeerReadError) as info:
        await _read(frame)
    assert info.value.kind is PeerReadErrorKind.READ_BUFFER


@pytest.mark.asyncio
async def test_parser_empty_stream():
    with pytest.raises(PeerReadError) as info:
        await _read(b"")
    assert info.value.kind is PeerReadErrorKind.READ_BUFFER


@pytest.mark.asyncio
async def test_parser_keeps_unknown_commands():
    frame = frame_message(Network.REGTEST, NetworkMessage("mystery", b"abc"))
    message = await _read(frame)
    assert message.command == "mystery"
    assert message.payload == b"abc"
    assert message.is_known is False


@pytest.mark.asyncio
async def test_parser_accepts_valid_block():
    block = _block(valid=True)
    message = await _read(frame_message(Network.REGTEST, NetworkMessage("block", block)))
    assert message.payload == block


@pytest.mark.asyncio
async def test_parser_rejects_invalid_block():
    frame = frame_message(Network.REGTEST, NetworkMessage("block", _block(valid=False)))
    with pytest.raises(PeerReadError) as info:
        await _read(frame)
    assert info.value.kind is PeerReadErrorKind.DESERIALIZATION


def test_verify_network_message():
    assert verify_network_message(NetworkMessage("block", _block(valid=True))) is True
    assert verify_network_message(NetworkMessage("block", _block(valid=False))) is False
    assert verify_network_message(NetworkMessage("ping", 3)) is True