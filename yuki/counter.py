"""Simple denial-of-service accounting for messages exchanged with a peer."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

# A peer cannot send 10,000 addresses in one connection.
ADDR_HARD_LIMIT = 10_000


@dataclass
class MessageTimer:
    """Tracks how long a request has been waiting for a response."""

    timeout: float
    clock: Callable[[], float] = time.monotonic
    tracked_time: Optional[float] = field(default=None, init=False)

    def track(self) -> None:
        self.tracked_time = self.clock()

    def untrack(self) -> None:
        self.tracked_time = None

    def unresponsive(self) -> bool:
        if self.tracked_time is None:
            return False
        return self.clock() - self.tracked_time > self.timeout


@dataclass
class MessageCounter:
    """Counts expected and received messages so unsolicited ones can be detected."""

    timeout: float
    clock: Callable[[], float] = time.monotonic
    timer: MessageTimer = field(init=False)
    version: int = field(default=1, init=False)
    verack: int = field(default=1, init=False)
    header: int = field(default=0, init=False)
    filter_header: int = field(default=0, init=False)
    filters: int = field(default=0, init=False)
    addrs: int = field(default=0, init=False)
    block: int = field(default=0, init=False)
    tx: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self.timer = MessageTimer(self.timeout, self.clock)

    def got_version(self) -> None:
        self.version -= 1

    def got_verack(self) -> None:
        self.timer.untrack()
        self.verack -= 1

    def got_header(self) -> None:
        self.timer.untrack()

    def got_filter_header(self) -> None:
        self.timer.untrack()
        self.filter_header -= 1

    def got_filter(self) -> None:
        self.timer.untrack()
        self.filters -= 1

    def got_addrs(self, num_addrs: int) -> None:
        self.addrs -= num_addrs

    def got_block(self) -> None:
        self.timer.untrack()
        self.block -= 1

    def got_reject(self) -> None:
        self.tx -= 1

    def sent_version(self) -> None:
        self.timer.track()

    def sent_header(self) -> None:
        self.timer.track()

    def sent_filter_header(self) -> None:
        self.timer.track()
        self.filter_header += 1

    def sent_filters(self) -> None:
        self.timer.track()
        self.filters += 1000

    def sent_addrs(self) -> None:
        self.addrs += ADDR_HARD_LIMIT

    def sent_block(self) -> None:
        self.timer.track()
        self.block += 1

    def sent_tx(self) -> None:
        self.tx += 1

    def unsolicited(self) -> bool:
        """Whether the peer sent more of some message than was asked for."""
        return any(
            count < 0
            for count in (
                self.version,
                self.header,
                self.filters,
                self.verack,
                self.filter_header,
                self.addrs,
                self.block,
                self.tx,
            )
        )

    def unresponsive(self) -> bool:
        return self.timer.unresponsive()