# decoding/events.py
"""
decoding.events

Base shape shared by every decoded contract event.

each generated variant is a frozen dataclass subclass that declares its
canonical SIGNATURE and the ordered PARAMS of the ABI event; the fields copied
from the source log come first and are common to every variant.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, ClassVar, Dict, NamedTuple, Tuple

from eth_utils import keccak

from common.utils import normalize_hex


class EventParam(NamedTuple):
    name: str
    abi_type: str
    indexed: bool


_WORD_PREFIXES = ("uint", "int", "bytes")


def is_word_type(abi_type: str) -> bool:
    """True for elementary ABI types that occupy exactly one 32 byte word."""
    if abi_type in ("address", "bool"):
        return True
    if "[" in abi_type or "(" in abi_type or abi_type in ("bytes", "string"):
        return False
    return abi_type.startswith(_WORD_PREFIXES)


def python_type(abi_type: str, indexed: bool = False) -> str:
    """Annotation used for a field of the given ABI type in generated code."""
    if indexed and not is_word_type(abi_type):
        # reference types are hashed into the topic
        return "bytes"
    if abi_type.endswith("]") or abi_type.startswith("("):
        return "tuple"
    if abi_type in ("address", "string"):
        return "str"
    if abi_type == "bool":
        return "bool"
    if abi_type.startswith("bytes"):
        return "bytes"
    return "int"


@lru_cache(maxsize=None)
def topic_hash(signature: str) -> str:
    return normalize_hex(keccak(text=signature))


def _jsonable(value: Any) -> Any:
    # integers go out as base 10 text, uint256 does not fit a database integer
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return normalize_hex(bytes(value))
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class DecodedEvent:
    SIGNATURE: ClassVar[str] = ""
    PARAMS: ClassVar[Tuple[EventParam, ...]] = ()

    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    address: str

    @classmethod
    def event_name(cls) -> str:
        return cls.SIGNATURE.split("(", 1)[0]

    @classmethod
    def topic0(cls) -> str:
        return topic_hash(cls.SIGNATURE)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.block_hash, self.log_index)

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)

    def args(self) -> Dict[str, Any]:
        return {p.name: getattr(self, p.name) for p in self.PARAMS}

    def to_row(self) -> Dict[str, Any]:
        """Flat record written to the events table."""
        return {
            "block_hash": self.block_hash,
            "log_index": self.log_index,
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
            "address": self.address,
            "event_name": self.event_name(),
            "args": {k: _jsonable(v) for k, v in self.args().items()},
        }
