"""Networking building blocks for a light Bitcoin node: wire messages, DNS seeding, peer accounting and RPC helpers."""

__version__ = "0.0.1"

__all__ = [
    "connection",
    "counter",
    "dns",
    "errors",
    "messages",
    "prelude",
    "reader",
    "rpc",
    "wire",
]