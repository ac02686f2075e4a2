# streaming/cli.py
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from common.errors import ConfigError, IndexerError
from common.logging_setup import setup_logging
from common.models import LogFilter
from common.settings import Settings, load_settings
from decoding.decoder import EventDecoder
from ingestion.chain_link import ChainLink
from ingestion.checkpoint import CheckpointStore
from ingestion.node_client import WebsocketNodeClient
from storage.manager import EventStore, get_storage
from storage.sink import PersistenceSink
from streaming.coordinator import PipelineCoordinator

log = logging.getLogger(__name__)


def make_store(settings: Settings) -> EventStore:
    db = settings.db
    return get_storage(
        db.driver,
        sqlite_path=db.sqlite_path,
        dsn=db.dsn,
        host=db.host,
        port=db.port,
        username=db.username,
        password=db.password,
        name=db.name,
    )


def build_pipeline(settings: Settings, store: Optional[EventStore] = None) -> PipelineCoordinator:
    """Wire node client, chain link, decoder, sink and checkpoint store from settings."""
    try:
        decoder = EventDecoder.for_event_set(settings.contract.event_set)
    except ValueError as e:
        raise ConfigError(f"contract.event_set: {e}") from e
    sink = PersistenceSink(store or make_store(settings), commit_timeout=settings.pipeline.commit_timeout)
    node = WebsocketNodeClient(
        settings.node.ws_url,
        settings.node.rpc_url(),
        connect_timeout=settings.node.connect_timeout,
        idle_timeout=settings.node.idle_timeout,
        request_timeout=settings.node.request_timeout,
    )
    link = ChainLink(
        node,
        LogFilter(settings.contract.address, decoder.topics),
        backoff=settings.retry.backoff(),
        reconcile_depth=settings.pipeline.reconcile_depth,
        log_chunk=settings.pipeline.log_chunk,
        recorded_hashes=sink.recorded_hashes,
    )
    start = settings.contract.start_block
    return PipelineCoordinator(
        link,
        decoder,
        sink,
        CheckpointStore(sink),
        batch_size=settings.pipeline.batch_size,
        flush_interval=settings.pipeline.flush_interval,
        queue_size=settings.pipeline.queue_size,
        backoff=settings.retry.backoff(),
        start_block=None if start == "latest" else start,
        dedup_window=max(64, 2 * settings.pipeline.reconcile_depth),
    )


async def _run_pipeline(coord: PipelineCoordinator) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, coord.stop)
        except NotImplementedError:
            log.debug("signal handlers unsupported on this platform")
    stats = await coord.run()
    print(f"Stopped. committed {stats.committed} events in {stats.batches} batches")


def cmd_run(args) -> int:
    settings = load_settings(args.config)
    setup_logging(args.log_level or settings.logging.level)
    store = make_store(settings)
    try:
        asyncio.run(_run_pipeline(build_pipeline(settings, store)))
    finally:
        store.close()
    return 0


def cmd_generate(args) -> int:
    from codegen.generate import generate_types

    setup_logging(args.log_level or "INFO")
    count = generate_types(args.abi, args.out, args.name)
    print(f"Successfully created types file {args.out} with {count} events")
    return 0


def cmd_bootstrap(args) -> int:
    settings = load_settings(args.config)
    setup_logging(args.log_level or settings.logging.level)
    store = make_store(settings)
    try:
        store.setup()
        store.verify_schema()
    finally:
        store.close()
    print(f"Schema ready ({settings.db.driver})")
    return 0


def cmd_status(args) -> int:
    settings = load_settings(args.config)
    setup_logging(args.log_level or settings.logging.level)
    store = make_store(settings)
    try:
        store.verify_schema()
        cp = store.read_checkpoint()
        total = store.count_events()
    finally:
        store.close()
    if cp is None:
        print(f"checkpoint: none, events: {total}")
    else:
        print(f"checkpoint: block {cp.last_block_number} hash {cp.last_block_hash}, events: {total}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="event-indexer", description="Index contract events from a chain node")
    p.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    p.add_argument("--log-level", dest="log_level", default=None, help="Override logging.level")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Stream, decode and persist events until stopped").set_defaults(func=cmd_run)

    g = sub.add_parser("generate", help="Generate event types from a contract ABI")
    g.add_argument("--abi", default="abi/uniswap_v3_pool.json", help="ABI JSON file")
    g.add_argument("--out", default="decoding/pool_events.py", help="Output module path")
    g.add_argument("--name", default="UniswapV3Pool", help="Contract name")
    g.set_defaults(func=cmd_generate)

    sub.add_parser("bootstrap", help="Create the events and checkpoint tables").set_defaults(func=cmd_bootstrap)
    sub.add_parser("status", help="Print checkpoint and stored event count").set_defaults(func=cmd_status)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except IndexerError as e:
        print(f"ERROR {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
