# storage/manager.py
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from common.models import Checkpoint


class EventStore:
    """
    Synchronous event store. Every write goes through one connection and one lock.

    commit() and rollback() are single transactions; the checkpoint row is only
    ever changed inside one of them.
    """

    def setup(self) -> None:
        raise NotImplementedError

    def verify_schema(self) -> None:
        raise NotImplementedError

    def read_checkpoint(self) -> Optional[Checkpoint]:
        raise NotImplementedError

    def block_hashes(self, start: int, end: int) -> Dict[int, str]:
        raise NotImplementedError

    def commit(self, events: Iterable[Any], checkpoint: Checkpoint) -> int:
        raise NotImplementedError

    def rollback(self, from_block: int) -> Optional[Checkpoint]:
        raise NotImplementedError

    def query_events(
        self,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        event_name: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def count_events(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        return None


def event_params(ev) -> Tuple[Any, ...]:
    """Column values for one decoded event, in events table order."""
    row = ev.to_row()
    return (
        row["block_hash"],
        row["log_index"],
        row["block_number"],
        row["transaction_hash"],
        row["address"],
        row["event_name"],
        json.dumps(row["args"], sort_keys=True),
    )


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_storage(backend: str, **opts: Any) -> EventStore:
    """
    Factory for storage backends. Accepts flexible option names.
      - sqlite: db_path | sqlite_path | path
      - postgres: dsn or host/port/username/password/name
    """
    b = (backend or "").lower()
    if b == "sqlite":
        from storage.sqlite_backend import SQLiteEventStore

        db_path = opts.get("db_path") or opts.get("sqlite_path") or opts.get("path") or "data/events.db"
        return SQLiteEventStore(db_path)
    elif b in ("postgres", "postgresql", "pg"):
        from storage.postgres_backend import PostgresEventStore

        return PostgresEventStore(
            dsn=opts.get("dsn"),
            host=opts.get("host"),
            port=opts.get("port", 5432),
            username=opts.get("username"),
            password=opts.get("password"),
            name=opts.get("name"),
        )
    else:
        raise ValueError(f"Unknown storage backend: {backend!r}")
