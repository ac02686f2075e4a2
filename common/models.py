# common/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class RawLog:
    """
    One log notification as delivered by the node.

    identity is (block_hash, log_index), chain order is (block_number, log_index)
    """
    address: str
    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    topics: Tuple[str, ...]
    data: bytes
    removed: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.block_hash, self.log_index)

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class Checkpoint:
    last_block_number: int
    last_block_hash: str


@dataclass(frozen=True)
class Reorg:
    """Stream marker: rows at or after from_block belong to a replaced chain."""
    from_block: int


@dataclass(frozen=True)
class LogFilter:
    address: str
    topics: Tuple[str, ...] = field(default_factory=tuple)

    def as_params(self, from_block: Optional[int] = None, to_block: Optional[int] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"address": self.address}
        if self.topics:
            # topic[0] may match any of the known event signatures
            params["topics"] = [list(self.topics)]
        if from_block is not None:
            params["fromBlock"] = hex(from_block)
        if to_block is not None:
            params["toBlock"] = hex(to_block)
        return params


def sort_logs(logs: List[RawLog]) -> List[RawLog]:
    return sorted(logs, key=lambda lg: lg.position)
