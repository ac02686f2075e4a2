# ingestion/chain_link.py
"""
ingestion.chain_link

Resilient log stream for one contract on one node.

a session subscribes, reconciles the recent past against what was already
delivered or stored, backfills from the resume block up to the node head and
then follows live notifications. Any transient failure tears the session down
and a new one starts from the block after the last delivered one.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from common.backoff import Backoff
from common.errors import ConnectionFatal, ConnectionTransient, PersistUnavailable, RangeTooLarge
from common.models import LogFilter, RawLog, Reorg, sort_logs
from common.utils import chunked
from ingestion.node_client import LogSubscription, NodeClient
from ingestion.parser import parse_log

log = logging.getLogger(__name__)

StreamItem = Union[RawLog, Reorg]
RecordedHashes = Callable[[int, int], Awaitable[Dict[int, str]]]

_MAX_LOG_INDEX = 2 ** 32


class LinkState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RECONCILING = "reconciling"
    BACKFILLING = "backfilling"
    STREAMING = "streaming"
    BACKOFF = "backoff"
    CLOSED = "closed"
    FAILED = "failed"


TRANSITIONS = {
    LinkState.IDLE: {LinkState.CONNECTING, LinkState.CLOSED},
    LinkState.CONNECTING: {
        LinkState.RECONCILING, LinkState.BACKFILLING, LinkState.BACKOFF, LinkState.FAILED, LinkState.CLOSED,
    },
    LinkState.RECONCILING: {LinkState.BACKFILLING, LinkState.BACKOFF, LinkState.FAILED, LinkState.CLOSED},
    LinkState.BACKFILLING: {LinkState.STREAMING, LinkState.BACKOFF, LinkState.FAILED, LinkState.CLOSED},
    LinkState.STREAMING: {LinkState.BACKOFF, LinkState.FAILED, LinkState.CLOSED},
    LinkState.BACKOFF: {LinkState.CONNECTING, LinkState.FAILED, LinkState.CLOSED},
    LinkState.CLOSED: {LinkState.CONNECTING},
    LinkState.FAILED: set(),
}


class ChainLink:
    def __init__(
        self,
        node: NodeClient,
        log_filter: LogFilter,
        *,
        backoff: Optional[Backoff] = None,
        reconcile_depth: int = 12,
        log_chunk: int = 500,
        recorded_hashes: Optional[RecordedHashes] = None,
    ):
        self.node = node
        self.log_filter = log_filter
        self.backoff = backoff or Backoff()
        self.reconcile_depth = max(0, int(reconcile_depth))
        self.log_chunk = max(1, int(log_chunk))
        self.recorded_hashes = recorded_hashes

        self.state = LinkState.IDLE
        self.last_delivered: Optional[int] = None
        self._last_position: Optional[Tuple[int, int]] = None
        self._delivered_hashes: Dict[int, str] = {}

    # ------------------------------------------------------------------ api

    def connect(self, from_block: Optional[int] = None) -> AsyncIterator[StreamItem]:
        """
        Stream logs starting at from_block, None meaning the node's current head.

        resuming from a positive block reconciles the blocks before it first, so
        a restart notices a reorg that happened while the process was down.
        """
        self._begin()
        return self._run(from_block, reconcile=bool(from_block))

    def reconnect(self, from_block: int) -> AsyncIterator[StreamItem]:
        """Start a fresh session at from_block, reconciling the blocks before it."""
        self._begin()
        self._rewind(from_block)
        return self._run(from_block, reconcile=True)

    async def close(self) -> None:
        if self.state is LinkState.CLOSED:
            return
        if self.state is not LinkState.FAILED:
            self._transition(LinkState.CLOSED)
        await self.node.close()

    # ---------------------------------------------------------- state machine

    def _begin(self) -> None:
        if self.state not in (LinkState.IDLE, LinkState.CLOSED):
            # a new stream supersedes the session that was running
            self._transition(LinkState.CLOSED)

    def _transition(self, new: LinkState) -> None:
        if new not in TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal chain link transition {self.state.value} -> {new.value}")
        log.debug("chain link %s -> %s", self.state.value, new.value)
        self.state = new

    async def _run(self, from_block: Optional[int], reconcile: bool) -> AsyncIterator[StreamItem]:
        attempt = 0
        next_block = from_block
        while True:
            self._transition(LinkState.CONNECTING)
            sub: Optional[LogSubscription] = None
            try:
                # subscribe before backfilling so nothing mined meanwhile is missed
                sub = await self.node.subscribe(self.log_filter)
                if next_block is None:
                    next_block = await self.node.block_number()
                    log.info("starting at node head, block %d", next_block)

                if reconcile and self.reconcile_depth > 0:
                    self._transition(LinkState.RECONCILING)
                    async for item in self._reconcile(next_block):
                        yield item

                self._transition(LinkState.BACKFILLING)
                async for item in self._backfill(next_block):
                    yield item

                self._transition(LinkState.STREAMING)
                attempt = 0
                async for payload in sub:
                    for item in self._on_live(payload):
                        yield item
                raise ConnectionTransient("node ended the subscription")
            except ConnectionFatal:
                self._transition(LinkState.FAILED)
                raise
            except (ConnectionTransient, asyncio.TimeoutError, OSError) as e:
                attempt += 1
                if self.backoff.exhausted(attempt):
                    self._transition(LinkState.FAILED)
                    raise ConnectionFatal(f"giving up after {attempt - 1} reconnect attempts: {e}") from e
                self._transition(LinkState.BACKOFF)
                delay = self.backoff.delay(attempt)
                log.warning(
                    "connection lost (%s), retry %d/%d in %.1fs", e, attempt, self.backoff.max_retries, delay
                )
                await asyncio.sleep(delay)
            finally:
                if sub is not None:
                    await self._close_subscription(sub)

            if self.last_delivered is not None:
                next_block = self.last_delivered + 1
            reconcile = True

    async def _close_subscription(self, sub: LogSubscription) -> None:
        try:
            await sub.close()
        except (ConnectionTransient, OSError) as e:
            log.debug("ignoring error while closing subscription: %s", e)

    # ---------------------------------------------------------------- phases

    async def _reconcile(self, next_block: int) -> AsyncIterator[StreamItem]:
        anchor = self.last_delivered if self.last_delivered is not None else next_block - 1
        if anchor < 0:
            return
        lo = max(0, anchor - self.reconcile_depth + 1)

        known: Dict[int, str] = {}
        if self.recorded_hashes is not None:
            try:
                known.update(await self.recorded_hashes(lo, anchor))
            except PersistUnavailable as e:
                raise ConnectionTransient(f"cannot read stored block hashes: {e}") from e
        known.update({bn: h for bn, h in self._delivered_hashes.items() if lo <= bn <= anchor})
        if not known:
            return

        logs = await self._get_logs(lo, anchor)
        fresh: Dict[int, str] = {}
        for lg in logs:
            fresh.setdefault(lg.block_number, lg.block_hash)

        mismatch: Optional[int] = None
        for bn in sorted(known):
            current = fresh.get(bn)
            if current is None:
                # block had our logs before and has none now, ask for the header
                current = await self.node.get_block_hash(bn)
            if current is not None and current != known[bn]:
                mismatch = bn
                break

        if mismatch is not None:
            log.warning(
                "reorg detected at block %d during reconciliation (window %d..%d)", mismatch, lo, anchor
            )
            self._rewind(mismatch)
            yield Reorg(mismatch)

        # everything from the earliest known block goes out again, blocks that
        # only gained logs on the new chain included; the consumer skips rows it
        # already stored. Logs below that block predate what was ever delivered.
        floor = min(known)
        for lg in logs:
            if lg.block_number >= floor:
                self._record(lg)
                yield lg

    async def _backfill(self, start: int) -> AsyncIterator[StreamItem]:
        head = await self.node.block_number()
        if start > head:
            return
        for lo, hi in chunked(start, head, self.log_chunk):
            logs = await self._get_logs(lo, hi)
            log.debug("backfilled blocks %d..%d, %d logs", lo, hi, len(logs))
            for lg in logs:
                for item in self._accept(lg):
                    yield item

    async def _get_logs(self, lo: int, hi: int) -> List[RawLog]:
        try:
            return self._parse_many(await self.node.get_logs(self.log_filter, lo, hi))
        except RangeTooLarge as e:
            if lo == hi:
                raise
            mid = (lo + hi) // 2
            log.warning("node refused blocks %d..%d (%s), splitting at %d", lo, hi, e, mid)
            return await self._get_logs(lo, mid) + await self._get_logs(mid + 1, hi)

    def _on_live(self, payload) -> List[StreamItem]:
        try:
            lg = parse_log(payload)
        except ValueError as e:
            log.warning("dropping unparseable log notification: %s", e)
            return []
        if lg.removed:
            if lg.block_number in self._delivered_hashes:
                log.warning("node retracted block %d (%s)", lg.block_number, lg.block_hash)
                self._rewind(lg.block_number)
                return [Reorg(lg.block_number)]
            return []
        return self._accept(lg)

    # ------------------------------------------------------------ bookkeeping

    def _accept(self, lg: RawLog) -> List[StreamItem]:
        items: List[StreamItem] = []
        known = self._delivered_hashes.get(lg.block_number)
        if known is not None and known != lg.block_hash:
            log.warning("block %d changed hash %s -> %s", lg.block_number, known, lg.block_hash)
            self._rewind(lg.block_number)
            items.append(Reorg(lg.block_number))
        elif self._last_position is not None and lg.position <= self._last_position:
            if known is not None:
                # overlap between backfill and the live subscription
                return items
            if self.last_delivered is not None and lg.block_number < self.last_delivered - self.reconcile_depth:
                log.warning("dropping log for block %d, older than the reorg window", lg.block_number)
                return items
            # a block behind the stream position that was never delivered: new chain
            log.warning("new log behind stream position at block %d (%s)", lg.block_number, lg.block_hash)
            self._rewind(lg.block_number)
            items.append(Reorg(lg.block_number))
        self._record(lg)
        items.append(lg)
        return items

    def _record(self, lg: RawLog) -> None:
        if self._last_position is None or lg.position > self._last_position:
            self._last_position = lg.position
        if self.last_delivered is None or lg.block_number > self.last_delivered:
            self.last_delivered = lg.block_number
        self._delivered_hashes[lg.block_number] = lg.block_hash
        floor = self.last_delivered - self.reconcile_depth
        for bn in [b for b in self._delivered_hashes if b < floor]:
            del self._delivered_hashes[bn]

    def _rewind(self, block_number: int) -> None:
        for bn in [b for b in self._delivered_hashes if b >= block_number]:
            del self._delivered_hashes[bn]
        if self.last_delivered is not None and self.last_delivered >= block_number:
            self.last_delivered = block_number - 1 if block_number > 0 else None
        if self._last_position is not None and self._last_position[0] >= block_number:
            self._last_position = (block_number - 1, _MAX_LOG_INDEX) if block_number > 0 else None

    def _parse_many(self, raw_logs: Iterable[dict]) -> List[RawLog]:
        out: List[RawLog] = []
        for raw in raw_logs or []:
            try:
                out.append(parse_log(raw))
            except ValueError as e:
                log.warning("dropping unparseable log from node: %s", e)
        return sort_logs(out)
