"""Errors raised while talking to peers and bootstrapping from DNS seeds."""

from __future__ import annotations

import enum


class PeerReadErrorKind(enum.Enum):
    """Ways reading from a peer can fail."""

    READ_BUFFER = "reading bytes off the stream failed."
    DESERIALIZATION = "the message could not be properly deserialized."
    DECRYPTION_FAILED = "decrypting a message failed."
    TOO_MANY_MESSAGES = "DOS protection."
    PEER_TIMEOUT = "peer timeout."
    MPSC_CHANNEL = "sending over the channel failed."


class PeerReadError(Exception):
    """Reading a message from a peer failed."""

    def __init__(self, kind: PeerReadErrorKind) -> None:
        super().__init__(kind.value)
        self.kind = kind

    def __str__(self) -> str:
        return self.kind.value


class PeerErrorKind(enum.Enum):
    """Ways a peer connection can fail."""

    CONNECTION_FAILED = "the peer's TCP port was closed or we could not connect."
    MESSAGE_ENCRYPTION = "encrypting a serialized message failed."
    MESSAGE_SERIALIZATION = "serializing a message into bytes failed."
    HANDSHAKE_FAILED = "an attempted V2 transport handshake failed."
    BUFFER_WRITE = "a message could not be written to the peer."
    THREAD_CHANNEL = "experienced an error sending a message over the channel."
    DISCONNECT_COMMAND = "the main thread advised this peer to disconnect."
    READER = "the reading thread encountered an error."
    UNREACHABLE_SOCKET_ADDR = "cannot make use of provided p2p address."


class PeerError(Exception):
    """A peer connection failed."""

    def __init__(self, kind: PeerErrorKind) -> None:
        super().__init__(kind.value)
        self.kind = kind

    def __str__(self) -> str:
        return self.kind.value


class DnsBootstrapError(Exception):
    """Too few peers were found through the DNS seeds."""

    MESSAGE = "most dns seeding failed."

    def __init__(self) -> None:
        super().__init__(self.MESSAGE)

    def __str__(self) -> str:
        return self.MESSAGE


class DNSQueryErrorKind(enum.Enum):
    """Ways a single DNS query can fail."""

    MESSAGE_ID = "mismatch of message ID."
    QUESTION = "the question of the message does not match."
    CONNECTION_DENIED = "the UDP connection failed."
    UDP = "reading or writing from the UDP connection failed."
    MALFORMED_HEADER = "the DNS response header was too short."
    UNEXPECTED_EOF = "the end of the response was reached before we expected."


class DNSQueryError(Exception):
    """A DNS query to a seed failed."""

    def __init__(self, kind: DNSQueryErrorKind) -> None:
        super().__init__(kind.value)
        self.kind = kind

    def __str__(self) -> str:
        return self.kind.value