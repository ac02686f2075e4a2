from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from common.errors import PersistConflict, PersistError, PersistUnavailable, SchemaMissingError
from common.models import Checkpoint
from storage.manager import EventStore, event_params, utc_now
from storage.schema import REQUIRED_TABLES, bootstrap

log = logging.getLogger(__name__)

INSERT_EVENT_SQL = """
INSERT OR IGNORE INTO events
  (block_hash, log_index, block_number, transaction_hash, address, event_name, args)
VALUES (?,?,?,?,?,?,?)
"""

UPSERT_CHECKPOINT_SQL = """
INSERT INTO checkpoint (id, last_block_number, last_block_hash, updated_at)
VALUES (1, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
  last_block_number = excluded.last_block_number,
  last_block_hash   = excluded.last_block_hash,
  updated_at        = excluded.updated_at
"""


def _translate(e: sqlite3.Error) -> PersistError:
    msg = str(e)
    if "no such table" in msg:
        return SchemaMissingError(f"sqlite schema missing ({msg}), run bootstrap first")
    if isinstance(e, sqlite3.OperationalError):
        # locked database, disk I/O, closed connection
        return PersistUnavailable(f"sqlite unavailable: {msg}")
    return PersistError(f"sqlite error: {msg}")


class SQLiteEventStore(EventStore):
    def __init__(self, path: str, timeout: float = 5.0):
        self.path = path
        self.timeout = timeout
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _ensure(self) -> sqlite3.Connection:
        if self.conn is not None:
            return self.conn
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        try:
            # autocommit mode; transactions are opened explicitly below
            con = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None, check_same_thread=False)
        except sqlite3.Error as e:
            raise PersistUnavailable(f"cannot open sqlite database {self.path}: {e}") from e
        con.row_factory = sqlite3.Row
        self.conn = con
        return con

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            con = self._ensure()
            try:
                con.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise _translate(e) from e
            try:
                yield con
            except sqlite3.Error as e:
                self._rollback(con)
                raise _translate(e) from e
            except BaseException:
                self._rollback(con)
                raise
            try:
                con.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(con)
                raise _translate(e) from e

    @staticmethod
    def _rollback(con: sqlite3.Connection) -> None:
        if con.in_transaction:
            con.execute("ROLLBACK")

    def _query(self, sql: str, params: Tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            con = self._ensure()
            try:
                return con.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise _translate(e) from e

    def setup(self) -> None:
        with self._lock:
            try:
                bootstrap(self._ensure(), "sqlite")
            except sqlite3.Error as e:
                raise _translate(e) from e

    def verify_schema(self) -> None:
        rows = self._query("SELECT name FROM sqlite_master WHERE type='table'")
        present = {r["name"] for r in rows}
        missing = [t for t in REQUIRED_TABLES if t not in present]
        if missing:
            raise SchemaMissingError(f"{self.path} is missing tables {missing}, run bootstrap first")

    def read_checkpoint(self) -> Optional[Checkpoint]:
        rows = self._query("SELECT last_block_number, last_block_hash FROM checkpoint WHERE id = 1")
        if not rows:
            return None
        return Checkpoint(int(rows[0]["last_block_number"]), rows[0]["last_block_hash"])

    def block_hashes(self, start: int, end: int) -> Dict[int, str]:
        rows = self._query(
            "SELECT DISTINCT block_number, block_hash FROM events WHERE block_number BETWEEN ? AND ?",
            (int(start), int(end)),
        )
        return {int(r["block_number"]): r["block_hash"] for r in rows}

    def commit(self, events: Iterable[Any], checkpoint: Checkpoint) -> int:
        """
        Insert the batch and move the checkpoint in one transaction.
        Rows already present are skipped; returns how many rows were new.
        """
        inserted = 0
        with self._transaction() as con:
            row = con.execute("SELECT last_block_number FROM checkpoint WHERE id = 1").fetchone()
            if row is not None and checkpoint.last_block_number < int(row["last_block_number"]):
                raise PersistConflict(
                    f"checkpoint {checkpoint.last_block_number} is behind stored {row['last_block_number']}"
                )
            for ev in events:
                cur = con.execute(INSERT_EVENT_SQL, event_params(ev))
                inserted += cur.rowcount
            con.execute(
                UPSERT_CHECKPOINT_SQL,
                (checkpoint.last_block_number, checkpoint.last_block_hash, utc_now()),
            )
        return inserted

    def rollback(self, from_block: int) -> Optional[Checkpoint]:
        """Delete rows at or after from_block and pull the checkpoint back with them."""
        with self._transaction() as con:
            deleted = con.execute("DELETE FROM events WHERE block_number >= ?", (int(from_block),)).rowcount
            row = con.execute("SELECT last_block_number, last_block_hash FROM checkpoint WHERE id = 1").fetchone()
            cp = Checkpoint(int(row["last_block_number"]), row["last_block_hash"]) if row else None
            if cp is not None and cp.last_block_number >= from_block:
                newest = con.execute(
                    "SELECT block_number, block_hash FROM events ORDER BY block_number DESC, log_index DESC LIMIT 1"
                ).fetchone()
                if newest is None:
                    con.execute("DELETE FROM checkpoint WHERE id = 1")
                    cp = None
                else:
                    cp = Checkpoint(int(newest["block_number"]), newest["block_hash"])
                    con.execute(UPSERT_CHECKPOINT_SQL, (cp.last_block_number, cp.last_block_hash, utc_now()))
        log.info("rolled back %d rows from block %d, checkpoint now %s", deleted, from_block, cp)
        return cp

    def query_events(
        self,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        event_name: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        where, params = [], []
        if from_block is not None:
            where.append("block_number >= ?")
            params.append(int(from_block))
        if to_block is not None:
            where.append("block_number <= ?")
            params.append(int(to_block))
        if event_name:
            where.append("event_name = ?")
            params.append(event_name)
        sql = "SELECT * FROM events"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY block_number, log_index"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        out = []
        for r in self._query(sql, tuple(params)):
            d = dict(r)
            d["args"] = json.loads(d["args"])
            out.append(d)
        return out

    def count_events(self) -> int:
        return int(self._query("SELECT COUNT(*) AS n FROM events")[0]["n"])

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
