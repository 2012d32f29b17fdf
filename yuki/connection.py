"""Opening plain TCP connections to peers."""

from __future__ import annotations

import asyncio
from typing import Tuple

from .errors import PeerError, PeerErrorKind
from .prelude import AddrKind, AddrV2

CONNECTION_TIMEOUT = 2.0


class ClearNetConnection:
    """Connects to IPv4 and IPv6 peers over TCP."""

    def __init__(self, timeout: float = CONNECTION_TIMEOUT) -> None:
        self.timeout = timeout

    def can_connect(self, addr: AddrV2) -> bool:
        return addr.kind in (AddrKind.IPV4, AddrKind.IPV6)

    async def connect(
        self, addr: AddrV2, port: int
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open a connection; raises PeerError if the address or the peer is unusable."""
        if not self.can_connect(addr):
            raise PeerError(PeerErrorKind.UNREACHABLE_SOCKET_ADDR)
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(str(addr.address), port), self.timeout
            )
        except (asyncio.TimeoutError, OSError) as exc:
            raise PeerError(PeerErrorKind.CONNECTION_FAILED) from exc

    def __repr__(self) -> str:
        return "Generic connection. Either TCP, Tor, or something else concrete"