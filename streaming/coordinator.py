# streaming/coordinator.py
"""
streaming.coordinator

Drives chain link -> decoder -> sink as an explicit state machine.

rules
one the checkpoint only moves inside a sink commit or a reorg rollback
two a failed batch is retried whole, inserts skip rows already stored
three a reorg marker empties the buffer at or after its block before rolling back
four the producer is the only task that touches the chain link stream
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from common.backoff import Backoff
from common.errors import (
    CheckpointError,
    MalformedEvent,
    PersistError,
    PersistUnavailable,
    UnrecognizedEvent,
)
from common.models import Checkpoint, RawLog, Reorg

log = logging.getLogger(__name__)


class PipelineState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    RECONCILING = "reconciling"
    FLUSHING = "flushing"
    BACKOFF = "backoff"
    FATAL = "fatal"
    STOPPED = "stopped"


TRANSITIONS = {
    PipelineState.STARTING: {PipelineState.STREAMING, PipelineState.FATAL},
    PipelineState.STREAMING: {PipelineState.FLUSHING, PipelineState.RECONCILING, PipelineState.FATAL},
    PipelineState.RECONCILING: {PipelineState.STREAMING, PipelineState.BACKOFF, PipelineState.FATAL},
    PipelineState.FLUSHING: {
        PipelineState.STREAMING, PipelineState.BACKOFF, PipelineState.FATAL, PipelineState.STOPPED,
    },
    PipelineState.BACKOFF: {PipelineState.FLUSHING, PipelineState.RECONCILING, PipelineState.FATAL},
    PipelineState.FATAL: set(),
    PipelineState.STOPPED: set(),
}


@dataclass
class PipelineStats:
    received: int = 0
    committed: int = 0
    duplicates: int = 0
    unrecognized: int = 0
    malformed: int = 0
    reorgs: int = 0
    retries: int = 0
    batches: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class _Failure:
    error: BaseException


_END = object()
_STOP = object()
_TIMEOUT = object()


class PipelineCoordinator:
    def __init__(
        self,
        source,
        decoder,
        sink,
        checkpoints,
        *,
        batch_size: int = 100,
        flush_interval: float = 2.0,
        queue_size: int = 1000,
        backoff: Optional[Backoff] = None,
        start_block: Optional[int] = None,
        dedup_window: int = 64,
    ):
        self.source = source
        self.decoder = decoder
        self.sink = sink
        self.checkpoints = checkpoints
        self.batch_size = max(1, int(batch_size))
        self.flush_interval = float(flush_interval)
        self.queue_size = max(1, int(queue_size))
        self.backoff = backoff or Backoff()
        self.start_block = start_block
        self.dedup_window = max(0, int(dedup_window))

        self.state = PipelineState.STARTING
        self.stats = PipelineStats()
        self.error: Optional[BaseException] = None

        self._queue: Optional[asyncio.Queue] = None
        self._producer: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._buffer: List[Any] = []
        self._sent: "OrderedDict[tuple, int]" = OrderedDict()
        self._pending_reorg: Optional[int] = None
        self._pending_error: Optional[BaseException] = None
        self._stopping = False
        self._retry_state = PipelineState.FLUSHING
        self._retry_cause: Optional[BaseException] = None
        self._attempt = 0
        self._last_flush = 0.0

    # ------------------------------------------------------------------ api

    def stop(self) -> None:
        """Request a cooperative shutdown; buffered events are flushed first."""
        self._stop.set()

    async def run(self) -> PipelineStats:
        handlers = {
            PipelineState.STARTING: self._on_starting,
            PipelineState.STREAMING: self._on_streaming,
            PipelineState.RECONCILING: self._on_reconciling,
            PipelineState.FLUSHING: self._on_flushing,
            PipelineState.BACKOFF: self._on_backoff,
        }
        try:
            while self.state not in (PipelineState.FATAL, PipelineState.STOPPED):
                await handlers[self.state]()
        finally:
            await self._teardown()

        log.info("pipeline %s, stats %s", self.state.value, self.stats.as_dict())
        if self.state is PipelineState.FATAL:
            raise self.error
        return self.stats

    # ---------------------------------------------------------- state machine

    def _transition(self, new: PipelineState) -> None:
        if new not in TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal pipeline transition {self.state.value} -> {new.value}")
        log.debug("pipeline %s -> %s", self.state.value, new.value)
        self.state = new

    def _fail(self, err: BaseException) -> None:
        self.error = err
        log.error("pipeline halted: %s", err)
        self._transition(PipelineState.FATAL)

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    async def _on_starting(self) -> None:
        try:
            await self.sink.verify_schema()
            cp = await self.checkpoints.load()
        except (PersistError, CheckpointError) as e:
            return self._fail(e)

        from_block = self.checkpoints.resume_block(self.start_block)
        if cp is None:
            log.info("no checkpoint stored, starting at %s", "node head" if from_block is None else from_block)
        else:
            log.info("resuming after block %d (%s)", cp.last_block_number, cp.last_block_hash)

        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._producer = asyncio.create_task(self._pump(from_block))
        self._last_flush = self._now()
        self._transition(PipelineState.STREAMING)

    async def _on_streaming(self) -> None:
        if self._stop.is_set():
            self._stopping = True
            return self._transition(PipelineState.FLUSHING)

        timeout = max(0.0, self._last_flush + self.flush_interval - self._now())
        item = await self._next_item(timeout)

        if item is _TIMEOUT:
            if self._buffer:
                return self._transition(PipelineState.FLUSHING)
            self._last_flush = self._now()
            return
        if item is _STOP or item is _END:
            if item is _END:
                log.info("chain link stream ended")
            self._stopping = True
            return self._transition(PipelineState.FLUSHING)
        if isinstance(item, _Failure):
            # keep what is already decoded, then halt
            self._pending_error = item.error
            return self._transition(PipelineState.FLUSHING)
        if isinstance(item, Reorg):
            self._pending_reorg = item.from_block
            return self._transition(PipelineState.RECONCILING)

        self._accept(item)
        if len(self._buffer) >= self.batch_size:
            self._transition(PipelineState.FLUSHING)

    def _accept(self, raw: RawLog) -> None:
        self.stats.received += 1
        try:
            ev = self.decoder.decode(raw)
        except UnrecognizedEvent as e:
            self.stats.unrecognized += 1
            log.warning("skipping unrecognized log: %s", e.describe())
            return
        except MalformedEvent as e:
            self.stats.malformed += 1
            log.warning("skipping malformed log: %s", e.describe())
            return
        self._buffer.append(ev)

    async def _on_flushing(self) -> None:
        batch = self._dedupe_buffer()
        if batch:
            cp = self._next_checkpoint(batch)
            try:
                inserted = await self.sink.commit(batch, cp)
                self.checkpoints.advance(cp)
            except PersistUnavailable as e:
                self._retry_state = PipelineState.FLUSHING
                self._retry_cause = e
                return self._transition(PipelineState.BACKOFF)
            except (PersistError, CheckpointError) as e:
                return self._fail(e)

            for ev in batch:
                self._sent[ev.key] = ev.block_number
            self._prune_sent(cp.last_block_number)
            self.stats.committed += inserted
            self.stats.batches += 1
            log.info(
                "flushed %d events (%d new), checkpoint %d %s",
                len(batch), inserted, cp.last_block_number, cp.last_block_hash,
            )

        self._buffer = []
        self._attempt = 0
        self._last_flush = self._now()

        if self._pending_error is not None:
            return self._fail(self._pending_error)
        if self._stopping or self._stop.is_set():
            return self._transition(PipelineState.STOPPED)
        self._transition(PipelineState.STREAMING)

    async def _on_reconciling(self) -> None:
        n = self._pending_reorg
        kept = [ev for ev in self._buffer if ev.block_number < n]
        dropped = len(self._buffer) - len(kept)
        self._buffer = kept
        for key in [k for k, bn in self._sent.items() if bn >= n]:
            del self._sent[key]

        try:
            cp = await self.sink.rollback(n)
        except PersistUnavailable as e:
            self._retry_state = PipelineState.RECONCILING
            self._retry_cause = e
            return self._transition(PipelineState.BACKOFF)
        except PersistError as e:
            return self._fail(e)

        self.checkpoints.reset(cp)
        self.stats.reorgs += 1
        self._pending_reorg = None
        self._attempt = 0
        log.warning(
            "reorg from block %d: dropped %d buffered events, checkpoint now %s",
            n, dropped, "none" if cp is None else cp.last_block_number,
        )
        self._transition(PipelineState.STREAMING)

    async def _on_backoff(self) -> None:
        self._attempt += 1
        self.stats.retries += 1
        if self.backoff.exhausted(self._attempt):
            return self._fail(
                PersistUnavailable(f"giving up after {self._attempt - 1} retries: {self._retry_cause}")
            )
        delay = self.backoff.delay(self._attempt)
        log.warning(
            "%s failed (%s), retry %d/%d in %.1fs",
            self._retry_state.value, self._retry_cause, self._attempt, self.backoff.max_retries, delay,
        )
        await asyncio.sleep(delay)
        self._transition(self._retry_state)

    # ------------------------------------------------------------- helpers

    def _dedupe_buffer(self) -> List[Any]:
        seen = set()
        out = []
        for ev in self._buffer:
            if ev.key in seen or ev.key in self._sent:
                self.stats.duplicates += 1
                continue
            seen.add(ev.key)
            out.append(ev)
        out.sort(key=lambda ev: ev.position)
        self._buffer = out
        return out

    def _next_checkpoint(self, batch: List[Any]) -> Checkpoint:
        last = batch[-1]
        current = self.checkpoints.current
        if current is not None and current.last_block_number > last.block_number:
            # batch only replayed blocks that are already stored
            return current
        return Checkpoint(last.block_number, last.block_hash)

    def _prune_sent(self, head: int) -> None:
        floor = head - self.dedup_window
        for key in [k for k, bn in self._sent.items() if bn < floor]:
            del self._sent[key]

    async def _next_item(self, timeout: float):
        if not self._queue.empty():
            return self._queue.get_nowait()
        get = asyncio.ensure_future(self._queue.get())
        stop = asyncio.ensure_future(self._stop.wait())
        try:
            done, _ = await asyncio.wait({get, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not get.done():
                get.cancel()
        if get in done:
            return get.result()
        if stop in done:
            return _STOP
        return _TIMEOUT

    async def _pump(self, from_block: Optional[int]) -> None:
        stream = self.source.connect(from_block)
        try:
            async for item in stream:
                # blocks while the queue is full
                await self._queue.put(item)
        except Exception as e:
            await self._queue.put(_Failure(e))
            return
        finally:
            await stream.aclose()
        await self._queue.put(_END)

    async def _teardown(self) -> None:
        if self._producer is not None:
            self._producer.cancel()
            await asyncio.gather(self._producer, return_exceptions=True)
            self._producer = None
        await self.source.close()
