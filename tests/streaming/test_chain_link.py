import asyncio
from dataclasses import dataclass, field
from typing import List

import pytest

from common.backoff import Backoff
from common.errors import ConnectionFatal, ConnectionTransient, PersistUnavailable, RangeTooLarge
from common.models import LogFilter, Reorg
from decoding.decoder import EventDecoder
from ingestion.chain_link import ChainLink, LinkState
from ingestion.checkpoint import CheckpointStore
from ingestion.node_client import LogSubscription, NodeClient
from storage.sink import PersistenceSink
from storage.sqlite_backend import SQLiteEventStore
from streaming.coordinator import PipelineCoordinator

ADDRESS = "0x" + "ab" * 20
TRANSFER_TOPIC0 = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
FAST = Backoff(base_delay=0, max_delay=0, max_retries=3, jitter=0)


def _h(bn: int, fork: str = "a") -> str:
    return "0x" + fork * 2 + f"{bn:062x}"


def raw(bn, index=0, fork="a", removed=False):
    return {
        "address": ADDRESS,
        "blockNumber": hex(bn),
        "blockHash": _h(bn, fork),
        "transactionHash": "0x" + f"{bn:032x}{index:032x}",
        "logIndex": hex(index),
        "topics": [TRANSFER_TOPIC0, "0x" + "00" * 12 + "11" * 20, "0x" + "00" * 12 + "22" * 20],
        "data": "0x" + f"{1:064x}",
        "removed": removed,
    }


@dataclass
class Session:
    logs: List[dict]
    head: int
    live: List[dict] = field(default_factory=list)
    drop: bool = False


class FakeSubscription(LogSubscription):
    def __init__(self, live, drop):
        self.live = list(live)
        self.drop = drop
        self.closed = False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for item in self.live:
            yield item
        if self.drop:
            raise ConnectionTransient("socket dropped")
        await asyncio.Event().wait()

    async def close(self):
        self.closed = True


class FakeNode(NodeClient):
    """Each subscribe() moves the node to the next session's chain view."""

    def __init__(self, sessions, reject=False, max_range=None):
        self.sessions = list(sessions)
        self.reject = reject
        self.max_range = max_range
        self.logs: List[dict] = []
        self.head = 0
        self.hashes = {}
        self.subs: List[FakeSubscription] = []
        self.subscribe_calls = 0
        self.get_logs_calls = []
        self.closed = False

    async def subscribe(self, log_filter):
        self.subscribe_calls += 1
        if self.reject:
            raise ConnectionFatal("invalid address in filter")
        if not self.sessions:
            raise ConnectionTransient("connection refused")
        s = self.sessions.pop(0)
        self.logs, self.head = s.logs, s.head
        sub = FakeSubscription(s.live, s.drop)
        self.subs.append(sub)
        return sub

    async def get_logs(self, log_filter, from_block, to_block):
        self.get_logs_calls.append((from_block, to_block))
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            raise RangeTooLarge(f"block range {from_block}..{to_block} too wide")
        return [lg for lg in self.logs if from_block <= int(lg["blockNumber"], 16) <= to_block]

    async def get_block_hash(self, block_number):
        for lg in self.logs:
            if int(lg["blockNumber"], 16) == block_number:
                return lg["blockHash"]
        return self.hashes.get(block_number)

    async def block_number(self):
        return self.head

    async def close(self):
        self.closed = True


async def take(stream, n, timeout=2.0):
    out = []

    async def _collect():
        async for item in stream:
            out.append(item)
            if len(out) == n:
                return

    await asyncio.wait_for(_collect(), timeout)
    await stream.aclose()
    return out


def summary(items):
    out = []
    for it in items:
        if isinstance(it, Reorg):
            out.append(("reorg", it.from_block))
        else:
            out.append((it.block_number, it.log_index, it.block_hash[2]))
    return out


def _link(node, **kw):
    kw.setdefault("backoff", FAST)
    return ChainLink(node, LogFilter(ADDRESS, (TRANSFER_TOPIC0,)), **kw)


@pytest.mark.asyncio
async def test_backfill_then_live_drops_overlap():
    node = FakeNode([Session(logs=[raw(10), raw(11)], head=11, live=[raw(11), raw(12)])])
    link = _link(node)
    items = await take(link.connect(10), 3)
    assert summary(items) == [(10, 0, "a"), (11, 0, "a"), (12, 0, "a")]
    assert link.state is LinkState.STREAMING
    assert link.last_delivered == 12
    assert node.get_logs_calls == [(10, 11)]
    assert node.subs[0].closed


@pytest.mark.asyncio
async def test_backfill_in_chunks():
    node = FakeNode([Session(logs=[raw(1), raw(5), raw(9)], head=9)])
    link = _link(node, log_chunk=4)
    items = await take(link.connect(1), 3)
    assert [it.block_number for it in items] == [1, 5, 9]
    assert node.get_logs_calls == [(1, 4), (5, 8), (9, 9)]


@pytest.mark.asyncio
async def test_start_at_node_head():
    node = FakeNode([Session(logs=[raw(5), raw(7)], head=7, live=[raw(8)])])
    items = await take(_link(node).connect(None), 2)
    assert summary(items) == [(7, 0, "a"), (8, 0, "a")]


@pytest.mark.asyncio
async def test_reconnect_after_drop_resumes_after_last_delivered():
    node = FakeNode([
        Session(logs=[raw(10), raw(11)], head=11, live=[raw(12)], drop=True),
        Session(logs=[raw(10), raw(11), raw(12), raw(13)], head=13),
    ])
    link = _link(node, reconcile_depth=2)
    items = await take(link.connect(10), 6)
    # the reconciliation window re-emits blocks 11 and 12, the consumer dedups them
    assert summary(items) == [
        (10, 0, "a"), (11, 0, "a"), (12, 0, "a"),
        (11, 0, "a"), (12, 0, "a"),
        (13, 0, "a"),
    ]
    assert node.subscribe_calls == 2
    assert node.subs[0].closed
    assert node.get_logs_calls == [(10, 11), (11, 12), (13, 13)]


@pytest.mark.asyncio
async def test_reorg_detected_during_reconciliation():
    node = FakeNode([
        Session(logs=[raw(10), raw(11)], head=11, drop=True),
        Session(logs=[raw(10), raw(11, fork="b")], head=11),
    ])
    link = _link(node)
    items = await take(link.connect(10), 5)
    assert summary(items) == [
        (10, 0, "a"), (11, 0, "a"),
        ("reorg", 11),
        (10, 0, "a"), (11, 0, "b"),
    ]
    assert link.last_delivered == 11


@pytest.mark.asyncio
async def test_reorg_detected_for_block_that_lost_its_logs():
    node = FakeNode([
        Session(logs=[raw(10), raw(11)], head=11, drop=True),
        Session(logs=[raw(10)], head=11),
    ])
    node.hashes = {11: _h(11, "c")}
    items = await take(_link(node).connect(10), 4)
    assert summary(items) == [(10, 0, "a"), (11, 0, "a"), ("reorg", 11), (10, 0, "a")]


@pytest.mark.asyncio
async def test_removed_notification_yields_reorg():
    node = FakeNode([
        Session(logs=[raw(10), raw(11)], head=11, live=[raw(50, removed=True), raw(11, removed=True), raw(11, fork="b")]),
    ])
    items = await take(_link(node).connect(10), 4)
    assert summary(items) == [(10, 0, "a"), (11, 0, "a"), ("reorg", 11), (11, 0, "b")]


@pytest.mark.asyncio
async def test_recorded_hashes_detect_reorg_on_restart():
    async def recorded(lo, hi):
        return {10: _h(10, "f")}

    node = FakeNode([Session(logs=[raw(10), raw(11)], head=11)])
    items = await take(_link(node, recorded_hashes=recorded).connect(11), 3)
    assert summary(items) == [("reorg", 10), (10, 0, "a"), (11, 0, "a")]


@pytest.mark.asyncio
async def test_retries_exhausted_raise_fatal():
    node = FakeNode([])
    link = _link(node, backoff=Backoff(base_delay=0, max_retries=2, jitter=0))
    with pytest.raises(ConnectionFatal):
        await take(link.connect(5), 1)
    assert node.subscribe_calls == 3
    assert link.state is LinkState.FAILED


@pytest.mark.asyncio
async def test_rejected_filter_is_fatal_without_retry():
    node = FakeNode([], reject=True)
    link = _link(node)
    with pytest.raises(ConnectionFatal):
        await take(link.connect(5), 1)
    assert node.subscribe_calls == 1
    assert link.state is LinkState.FAILED
    await link.close()
    assert node.closed


@pytest.mark.asyncio
async def test_explicit_reconnect_from_block():
    logs = [raw(10), raw(11), raw(12)]
    node = FakeNode([Session(logs=logs, head=12), Session(logs=logs, head=12)])
    link = _link(node)
    assert len(await take(link.connect(10), 3)) == 3
    items = await take(link.reconnect(11), 3)
    assert summary(items) == [(10, 0, "a"), (11, 0, "a"), (12, 0, "a")]
    await link.close()
    assert link.state is LinkState.CLOSED
    assert node.closed


@pytest.mark.asyncio
async def test_pipeline_over_chain_link_survives_reconnect(tmp_path):
    store = SQLiteEventStore(str(tmp_path / "events.db"))
    store.setup()
    sink = PersistenceSink(store, commit_timeout=5)
    node = FakeNode([
        Session(logs=[raw(10, 0), raw(10, 1), raw(11)], head=11, live=[raw(12)], drop=True),
        Session(logs=[raw(10, 0), raw(10, 1), raw(11), raw(12), raw(13)], head=13),
    ])
    link = _link(node, reconcile_depth=2, recorded_hashes=sink.recorded_hashes)
    coord = PipelineCoordinator(
        link,
        EventDecoder.for_event_set("erc20"),
        sink,
        CheckpointStore(sink),
        batch_size=2,
        flush_interval=0.05,
        backoff=FAST,
        start_block=10,
    )
    task = asyncio.create_task(coord.run())
    for _ in range(200):
        if store.count_events() == 5:
            break
        await asyncio.sleep(0.01)
    coord.stop()
    stats = await asyncio.wait_for(task, 2)

    assert store.count_events() == 5
    assert store.read_checkpoint().last_block_number == 13
    assert stats.duplicates >= 1
    assert node.closed


@pytest.mark.asyncio
async def test_reconciliation_delivers_block_that_only_exists_on_new_chain():
    node = FakeNode([
        Session(logs=[raw(10), raw(12)], head=12, drop=True),
        Session(logs=[raw(10), raw(11, fork="b"), raw(12, fork="b")], head=12),
    ])
    items = await take(_link(node).connect(10), 6)
    assert summary(items) == [
        (10, 0, "a"), (12, 0, "a"),
        ("reorg", 12),
        (10, 0, "a"), (11, 0, "b"), (12, 0, "b"),
    ]


@pytest.mark.asyncio
async def test_reconciliation_skips_logs_older_than_anything_stored():
    async def recorded(lo, hi):
        return {10: _h(10)}

    node = FakeNode([Session(logs=[raw(8), raw(10)], head=10)])
    items = await take(_link(node, recorded_hashes=recorded).connect(11), 1)
    assert summary(items) == [(10, 0, "a")]


@pytest.mark.asyncio
async def test_live_log_behind_position_on_new_chain_is_delivered():
    node = FakeNode([
        Session(
            logs=[raw(10), raw(12)],
            head=12,
            live=[raw(12, removed=True), raw(11, fork="b"), raw(12, fork="b")],
        ),
    ])
    items = await take(_link(node).connect(10), 6)
    assert summary(items) == [
        (10, 0, "a"), (12, 0, "a"),
        ("reorg", 12),
        ("reorg", 11), (11, 0, "b"),
        (12, 0, "b"),
    ]


@pytest.mark.asyncio
async def test_live_duplicate_of_backfilled_log_is_still_dropped():
    node = FakeNode([Session(logs=[raw(10), raw(12)], head=12, live=[raw(10), raw(12), raw(13)])])
    items = await take(_link(node).connect(10), 3)
    assert summary(items) == [(10, 0, "a"), (12, 0, "a"), (13, 0, "a")]


@pytest.mark.asyncio
async def test_unavailable_hash_store_triggers_reconnect():
    calls = []

    async def recorded(lo, hi):
        calls.append((lo, hi))
        if len(calls) == 1:
            raise PersistUnavailable("database is locked")
        return {10: _h(10)}

    logs = [raw(10), raw(11)]
    node = FakeNode([Session(logs=logs, head=11), Session(logs=logs, head=11)])
    link = _link(node, recorded_hashes=recorded)
    items = await take(link.connect(11), 2)
    assert summary(items) == [(10, 0, "a"), (11, 0, "a")]
    assert len(calls) == 2
    assert node.subscribe_calls == 2
    assert node.subs[0].closed


@pytest.mark.asyncio
async def test_backfill_splits_ranges_the_node_refuses():
    node = FakeNode([Session(logs=[raw(1), raw(6), raw(8)], head=8)], max_range=3)
    items = await take(_link(node, log_chunk=8).connect(1), 3)
    assert [it.block_number for it in items] == [1, 6, 8]
    assert node.get_logs_calls == [(1, 8), (1, 4), (1, 2), (3, 4), (5, 8), (5, 6), (7, 8)]
    assert node.subscribe_calls == 1
