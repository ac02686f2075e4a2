# storage/sink.py
import asyncio
import logging
from typing import Dict, Optional, Sequence

from common.errors import PersistUnavailable
from common.models import Checkpoint
from storage.manager import EventStore

log = logging.getLogger(__name__)


class PersistenceSink:
    """
    Async face of an EventStore.

    the store is synchronous, every call runs in a worker thread and commit and
    rollback are bounded by commit_timeout. A commit that times out may still
    land; retrying it is safe because inserts skip rows already present.
    """

    def __init__(self, store: EventStore, commit_timeout: float = 30.0):
        self.store = store
        self.commit_timeout = commit_timeout

    async def _call(self, what: str, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.commit_timeout)
        except asyncio.TimeoutError as e:
            raise PersistUnavailable(f"{what} timed out after {self.commit_timeout}s") from e

    async def verify_schema(self) -> None:
        await self._call("schema check", self.store.verify_schema)

    async def load_checkpoint(self) -> Optional[Checkpoint]:
        return await self._call("checkpoint read", self.store.read_checkpoint)

    async def commit(self, batch: Sequence, checkpoint: Checkpoint) -> int:
        inserted = await self._call("commit", self.store.commit, list(batch), checkpoint)
        log.debug(
            "committed %d/%d rows, checkpoint %d %s",
            inserted, len(batch), checkpoint.last_block_number, checkpoint.last_block_hash,
        )
        return inserted

    async def rollback(self, from_block: int) -> Optional[Checkpoint]:
        return await self._call("rollback", self.store.rollback, from_block)

    async def recorded_hashes(self, start: int, end: int) -> Dict[int, str]:
        return await self._call("block hash read", self.store.block_hashes, start, end)

    async def close(self) -> None:
        await asyncio.to_thread(self.store.close)
