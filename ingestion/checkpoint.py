from typing import Optional

from common.errors import CheckpointError
from common.models import Checkpoint


class CheckpointStore:
    """
    Read side of the durable checkpoint row.

    the row itself is written by the persistence sink inside the same
    transaction as the events it covers; this store loads it on startup and
    tracks the value the pipeline last committed.
    """

    def __init__(self, sink):
        self.sink = sink
        self._current: Optional[Checkpoint] = None

    @property
    def current(self) -> Optional[Checkpoint]:
        return self._current

    async def load(self) -> Optional[Checkpoint]:
        """Return the last durably recorded checkpoint, or None if none."""
        cp = await self.sink.load_checkpoint()
        if cp is not None and (cp.last_block_number < 0 or not cp.last_block_hash):
            raise CheckpointError(f"Stored checkpoint is corrupt: {cp!r}")
        self._current = cp
        return cp

    def advance(self, cp: Checkpoint) -> None:
        """Record a checkpoint the sink has just committed."""
        if self._current is not None and cp.last_block_number < self._current.last_block_number:
            raise CheckpointError(
                f"Checkpoint cannot move backwards: {self._current.last_block_number} -> {cp.last_block_number}"
            )
        self._current = cp

    def reset(self, cp: Optional[Checkpoint]) -> None:
        """Adopt the checkpoint left behind by a reorg rollback."""
        self._current = cp

    def resume_block(self, default: Optional[int]) -> Optional[int]:
        if self._current is None:
            return default
        return self._current.last_block_number + 1
