# decoding/decoder.py
import logging
from typing import Dict, Iterable, List, Tuple, Type

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from common.errors import MalformedEvent, UnrecognizedEvent
from common.models import RawLog
from common.utils import hex_to_bytes
from decoding import erc20_events, pool_events
from decoding.events import DecodedEvent, EventParam, is_word_type

log = logging.getLogger(__name__)

EVENT_SETS = {
    "uniswap_v3_pool": pool_events.EVENT_TYPES,
    "erc20": erc20_events.EVENT_TYPES,
}


def _normalize(abi_type: str, value):
    if abi_type == "address":
        return to_checksum_address(value)
    if abi_type.endswith("]") and isinstance(value, (list, tuple)):
        return tuple(_normalize(abi_type[: abi_type.rindex("[")], v) for v in value)
    return value


class EventDecoder:
    """
    Maps a RawLog onto one of a closed set of event variants.

    dispatch is an explicit topic0 -> variant lookup; decode() raises
    UnrecognizedEvent or MalformedEvent and never anything else for bad input.
    Holds no mutable state.
    """

    def __init__(self, event_types: Iterable[Type[DecodedEvent]]):
        self._by_topic: Dict[str, Type[DecodedEvent]] = {}
        for cls in event_types:
            topic = cls.topic0()
            if topic in self._by_topic:
                raise ValueError(f"duplicate event signature {cls.SIGNATURE}")
            self._by_topic[topic] = cls

    @classmethod
    def for_event_set(cls, name: str) -> "EventDecoder":
        try:
            return cls(EVENT_SETS[name])
        except KeyError:
            raise ValueError(f"unknown event set {name!r}, expected one of {sorted(EVENT_SETS)}") from None

    @property
    def topics(self) -> Tuple[str, ...]:
        return tuple(self._by_topic)

    def event_type(self, topic0: str) -> Type[DecodedEvent]:
        return self._by_topic[topic0]

    def decode(self, raw: RawLog) -> DecodedEvent:
        if not raw.topics:
            raise UnrecognizedEvent("log has no topics", raw)
        cls = self._by_topic.get(raw.topics[0])
        if cls is None:
            raise UnrecognizedEvent(f"unknown event signature {raw.topics[0]}", raw)

        indexed = [p for p in cls.PARAMS if p.indexed]
        plain = [p for p in cls.PARAMS if not p.indexed]
        if len(raw.topics) != len(indexed) + 1:
            raise MalformedEvent(
                f"{cls.event_name()} expects {len(indexed) + 1} topics, got {len(raw.topics)}", raw
            )

        values = {}
        for param, topic in zip(indexed, raw.topics[1:]):
            values[param.name] = self._decode_topic(cls, param, topic, raw)
        values.update(self._decode_data(cls, plain, raw))

        return cls(
            block_number=raw.block_number,
            block_hash=raw.block_hash,
            transaction_hash=raw.transaction_hash,
            log_index=raw.log_index,
            address=raw.address,
            **values,
        )

    def _decode_topic(self, cls, param: EventParam, topic: str, raw: RawLog):
        try:
            word = hex_to_bytes(topic)
        except ValueError as e:
            raise MalformedEvent(f"{cls.event_name()} topic for {param.name} is not hex", raw) from e
        if len(word) != 32:
            raise MalformedEvent(f"{cls.event_name()} topic for {param.name} is {len(word)} bytes", raw)
        if not is_word_type(param.abi_type):
            # indexed reference types only keep their keccak hash
            return word
        try:
            return _normalize(param.abi_type, abi_decode([param.abi_type], word)[0])
        except DecodingError as e:
            raise MalformedEvent(f"{cls.event_name()} topic for {param.name}: {e}", raw) from e

    def _decode_data(self, cls, plain: List[EventParam], raw: RawLog) -> dict:
        if not plain:
            if raw.data:
                raise MalformedEvent(f"{cls.event_name()} expects no data, got {len(raw.data)} bytes", raw)
            return {}
        types = [p.abi_type for p in plain]
        if all(is_word_type(t) for t in types) and len(raw.data) != 32 * len(types):
            raise MalformedEvent(
                f"{cls.event_name()} expects {32 * len(types)} data bytes, got {len(raw.data)}", raw
            )
        try:
            decoded = abi_decode(types, raw.data)
        except DecodingError as e:
            raise MalformedEvent(f"{cls.event_name()} data: {e}", raw) from e
        return {p.name: _normalize(p.abi_type, v) for p, v in zip(plain, decoded)}
