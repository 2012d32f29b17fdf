# yuki

Networking building blocks for a light Bitcoin node, written for asyncio.

## Modules

- **`yuki.prelude`**: the `Network` enum (with each network's `magic` bytes),
  the `AddrKind` and `AddrV2` address types, and the helpers `median`,
  `netgroup`, `default_port_from_network` and `encode_qname`.
- **`yuki.messages`**: Bitcoin P2P payload types and their codecs:
  `ServiceFlags`, `Inventory`, `NetAddress`, `AddrV2Entry`, `VersionMessage`,
  `GetHeadersMessage`, `GetCFHeaders`, `GetCFilters`, `CFilter`, `CFHeaders`,
  `RejectMessage`, `Transaction`, `BlockHeader`, `Block` and
  `NetworkMessage`, together with `encode_payload`, `decode_payload` and
  `double_sha256`. `Block.check_merkle_root` and
  `Block.check_witness_commitment` verify a block against its commitments.
- **`yuki.wire`**: plaintext (v1) framing. `V1Header.decode` parses the
  24-byte header, `frame_message` adds one, `make_version` builds the opening
  `version` message, and `V1OutboundMessage` builds every request the node
  sends. `V1MessageParser.read_message` reads one framed message from an
  `asyncio.StreamReader`, checking magic, size limit (32 MiB), checksum and,
  for blocks, the merkle root and witness commitment; any failure raises
  `PeerReadError`.
- **`yuki.reader`**: `Reader.parse_message` turns a `NetworkMessage` into a
  `PeerMessage` the node acts on, or `None` for messages of no interest.
  Oversized address, inventory or header lists, negative fee filters and
  unknown commands become a `DISCONNECT` message. `Reader.read_from_remote`
  forwards parsed messages to an `asyncio.Queue` until the parser raises.
- **`yuki.counter`**: `MessageCounter` and `MessageTimer`, which flag
  unsolicited messages (`unsolicited()`) and peers that leave a request
  unanswered past a timeout (`unresponsive()`). A custom clock can be passed
  in.
- **`yuki.dns`**: DNS seeding over UDP with `Dns`, `DNSQuery`, `DnsResolver`
  and `seeds_for_network`.
- **`yuki.connection`**: `ClearNetConnection` opens TCP connections to IPv4
  and IPv6 peers, raising `PeerError` for other address kinds, on timeout or
  on connection failure.
- **`yuki.rpc`**: RPC result types (`BlockFilterRpc`, `MempoolEntryResult`,
  `Fees`) with `to_json`/`from_json`, `RpcError`, `parse_mempool_error`, and
  `MempoolAcceptChecker`, which posts a raw transaction to an optional
  endpoint and raises `RpcError` if the endpoint reports a rejection. If the
  endpoint cannot be reached or its reply cannot be parsed, the check is
  skipped.
- **`yuki.errors`**: `PeerReadError`, `PeerError`, `DNSQueryError` (each with
  a `kind` enum) and `DnsBootstrapError`.

## Installation

```
pip install .
```

With the test dependencies:

```
pip install .[test]
```

## Examples

### Address net groups and medians

```python
from ipaddress import IPv4Address
from yuki.prelude import AddrKind, AddrV2, netgroup, median

addr = AddrV2(AddrKind.IPV4, IPv4Address("95.217.198.121"))
assert netgroup(addr) == "95.217"
assert median([2, 3, 4, 5, 1]) == 3
```

### Framing a plaintext message

```python
from yuki.prelude import Network
from yuki.wire import V1Header, V1OutboundMessage

outbound = V1OutboundMessage(Network.SIGNET)
data = outbound.verack()          # bytes ready to write to a peer
header = V1Header.decode(data)
assert header.command == "verack" and header.length == 0
```

### Seeding from DNS

```python
import asyncio
from yuki.prelude import Network
from yuki.dns import Dns, DnsResolver
from yuki.messages import ServiceFlags

async def seed():
    dns = Dns(Network.SIGNET, DnsResolver())
    return await dns.bootstrap(ServiceFlags.NETWORK)

asyncio.run(seed())
```

Failed seed queries are reported on standard error and skipped. If fewer than
ten addresses come back in total, `bootstrap` raises
`yuki.errors.DnsBootstrapError`.

## What this package does not do

These are building blocks, not a running node. The package has no
command-line tool, does not sync or store headers, filters or blocks, and
keeps no peer database. It speaks only the plaintext v1 transport; there is no
encrypted v2 transport and no Tor connector. `yuki.rpc` holds result types and
the mempool pre-check only; it does not serve JSON-RPC.

## Running the tests

```
pytest
```