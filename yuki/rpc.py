"""JSON-RPC result types and the optional mempool-acceptance pre-check."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)

GENERIC_ERROR_CODE = -1
DEFAULT_REJECT_CODE = -25
UNKNOWN_ERROR_MESSAGE = "Unknown error"
MEMPOOL_ERROR_PREFIX = "sendrawtransaction RPC error:"
_MEMPOOL_ERROR_STRIP = "sendrawtransaction RPC error: "


class RpcError(Exception):
    """An error reported to a JSON-RPC client: a numeric code and a message."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_json(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RpcError):
            return NotImplemented
        return (self.code, self.message) == (other.code, other.message)

    def __hash__(self) -> int:
        return hash((self.code, self.message))

    def __repr__(self) -> str:
        return f"RpcError(code={self.code}, message={self.message!r})"


def _require(data: Mapping[str, Any], key: str) -> Any:
    try:
        return data[key]
    except (KeyError, TypeError) as exc:
        raise ValueError(f"missing field {key!r}") from exc


def _int_field(data: Mapping[str, Any], key: str) -> int:
    value = _require(data, key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {key!r} must be an integer")
    return value


def _str_list(data: Mapping[str, Any], key: str) -> List[str]:
    value = _require(data, key)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"field {key!r} must be a list of strings")
    return list(value)


def _bool_field(data: Mapping[str, Any], key: str) -> bool:
    value = _require(data, key)
    if not isinstance(value, bool):
        raise ValueError(f"field {key!r} must be a boolean")
    return value


@dataclass(frozen=True)
class BlockFilterRpc:
    """A compact block filter as returned over RPC; the hash is in internal byte order."""

    hash: bytes
    height: int
    content: bytes

    def to_json(self) -> Dict[str, Any]:
        return {
            "hash": self.hash[::-1].hex(),
            "height": self.height,
            "content": self.content.hex(),
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "BlockFilterRpc":
        hash_hex = _require(data, "hash")
        content_hex = _require(data, "content")
        if not isinstance(hash_hex, str) or not isinstance(content_hex, str):
            raise ValueError("hash and content must be hex strings")
        block_hash = bytes.fromhex(hash_hex)
        if len(block_hash) != 32:
            raise ValueError("block hash must be 32 bytes")
        return cls(block_hash[::-1], _int_field(data, "height"), bytes.fromhex(content_hex))


@dataclass(frozen=True)
class Fees:
    """Fee figures of a mempool entry, in satoshis."""

    base_fee: int = 0
    modified_fee: int = 0
    ancestor_fee: int = 0
    descendant_fee: int = 0

    def to_json(self) -> Dict[str, Any]:
        return {
            "base": self.base_fee,
            "modified": self.modified_fee,
            "ancestor": self.ancestor_fee,
            "descendant": self.descendant_fee,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "Fees":
        return cls(
            base_fee=_int_field(data, "base"),
            modified_fee=_int_field(data, "modified"),
            ancestor_fee=_int_field(data, "ancestor"),
            descendant_fee=_int_field(data, "descendant"),
        )


@dataclass(frozen=True)
class MempoolEntryResult:
    """The result of ``getmempoolentry``."""

    virtual_size: int = 0
    weight: int = 0
    time: int = 0
    height: int = 0
    descendant_count: int = 0
    descendant_size: int = 0
    ancestor_count: int = 0
    ancestor_size: int = 0
    # Carried under the "ancestorfees" key on the wire.
    wtxid: str = ""
    fees: Fees = field(default_factory=Fees)
    dependencies: List[str] = field(default_factory=list)
    spent_by: List[str] = field(default_factory=list)
    bip125_replaceable: bool = False
    unbroadcast: bool = False

    def to_json(self) -> Dict[str, Any]:
        return {
            "vsize": self.virtual_size,
            "weight": self.weight,
            "time": self.time,
            "height": self.height,
            "descendantcount": self.descendant_count,
            "descendantsize": self.descendant_size,
            "ancestorcount": self.ancestor_count,
            "ancestorsize": self.ancestor_size,
            "ancestorfees": self.wtxid,
            "fees": self.fees.to_json(),
            "depends": list(self.dependencies),
            "spentby": list(self.spent_by),
            "bip125-replaceable": self.bip125_replaceable,
            "unbroadcast": self.unbroadcast,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "MempoolEntryResult":
        wtxid = _require(data, "ancestorfees")
        if not isinstance(wtxid, str):
            raise ValueError("field 'ancestorfees' must be a string")
        fees = _require(data, "fees")
        if not isinstance(fees, Mapping):
            raise ValueError("field 'fees' must be an object")
        return cls(
            virtual_size=_int_field(data, "vsize"),
            weight=_int_field(data, "weight"),
            time=_int_field(data, "time"),
            height=_int_field(data, "height"),
            descendant_count=_int_field(data, "descendantcount"),
            descendant_size=_int_field(data, "descendantsize"),
            ancestor_count=_int_field(data, "ancestorcount"),
            ancestor_size=_int_field(data, "ancestorsize"),
            wtxid=wtxid,
            fees=Fees.from_json(fees),
            dependencies=_str_list(data, "depends"),
            spent_by=_str_list(data, "spentby"),
            bip125_replaceable=_bool_field(data, "bip125-replaceable"),
            unbroadcast=_bool_field(data, "unbroadcast"),
        )


def _to_i32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >= (1 << 31) else value


def parse_mempool_error(text: str) -> Optional[RpcError]:
    """The rejection carried in a broadcast endpoint's reply, or None if it reports none."""
    if not text.startswith(MEMPOOL_ERROR_PREFIX):
        return None
    json_str = text
    while json_str.startswith(_MEMPOOL_ERROR_STRIP):
        json_str = json_str[len(_MEMPOOL_ERROR_STRIP):]
    try:
        error_json = json.loads(json_str)
    except ValueError as exc:
        logger.warning("test mempool accept: could not parse error '%s': %s", json_str, exc)
        return None
    code_value = error_json.get("code") if isinstance(error_json, dict) else None
    message_value = error_json.get("message") if isinstance(error_json, dict) else None
    if (
        isinstance(code_value, int)
        and not isinstance(code_value, bool)
        and -(1 << 63) <= code_value < (1 << 63)
    ):
        code = _to_i32(code_value)
    else:
        code = DEFAULT_REJECT_CODE
    message = message_value if isinstance(message_value, str) else UNKNOWN_ERROR_MESSAGE
    return RpcError(code, message)


class MempoolAcceptChecker:
    """Asks an external endpoint whether a transaction would enter the mempool."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = endpoint
        self.client = client

    async def _post(self, endpoint: str, tx_hex: str) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(endpoint, content=tx_hex)
        async with httpx.AsyncClient() as client:
            return await client.post(endpoint, content=tx_hex)

    async def check(self, tx_hex: str) -> None:
        """Raise RpcError if the endpoint rejects the transaction; skip if it cannot answer."""
        if self.endpoint is None:
            return
        try:
            response = await self._post(self.endpoint, tx_hex)
        except httpx.HTTPError as exc:
            logger.warning("test mempool accept: could not perform check: %s", exc)
            return
        try:
            text = response.text
        except (UnicodeDecodeError, LookupError) as exc:
            logger.warning("test mempool accept: could not read response body: %s", exc)
            return
        error = parse_mempool_error(text)
        if error is not None:
            raise error