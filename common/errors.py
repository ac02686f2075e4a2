# common/errors.py
"""
common.errors

Error taxonomy shared by the pipeline stages.

transient errors are retried with backoff, decode errors are skipped,
everything else halts the pipeline with the last checkpoint intact.
"""
from __future__ import annotations

from typing import Any, Optional


class IndexerError(Exception):
    pass


class ConfigError(IndexerError):
    pass


# --- chain link ---

class ChainConnectionError(IndexerError):
    pass


class ConnectionTransient(ChainConnectionError):
    """Socket drop, protocol error or heartbeat timeout. Safe to reconnect."""


class RangeTooLarge(ConnectionTransient):
    """The node refused a log range query as too wide. Retry with a smaller range."""


class ConnectionFatal(ChainConnectionError):
    """Retries exhausted or the node rejected the filter. Never retried."""


# --- decoder ---

class DecodeError(IndexerError):
    def __init__(self, message: str, log: Optional[Any] = None):
        super().__init__(message)
        self.log = log

    def describe(self) -> str:
        lg = self.log
        if lg is None:
            return str(self)
        return (
            f"{self} block={lg.block_number} hash={lg.block_hash} "
            f"tx={lg.transaction_hash} index={lg.log_index}"
        )


class UnrecognizedEvent(DecodeError):
    pass


class MalformedEvent(DecodeError):
    pass


# --- persistence ---

class PersistError(IndexerError):
    pass


class PersistUnavailable(PersistError):
    """Connection drop, lock timeout or commit timeout. The batch can be retried."""


class PersistConflict(PersistError):
    """Checkpoint would move backwards. Indicates a coordinator bug."""


class SchemaMissingError(PersistError):
    pass


class CheckpointError(IndexerError):
    pass
