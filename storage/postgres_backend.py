import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras

from common.errors import PersistConflict, PersistError, PersistUnavailable, SchemaMissingError
from common.models import Checkpoint
from storage.manager import EventStore, event_params, utc_now
from storage.schema import REQUIRED_TABLES, bootstrap

log = logging.getLogger(__name__)

INSERT_EVENT_SQL = """
INSERT INTO events
  (block_hash, log_index, block_number, transaction_hash, address, event_name, args)
VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
ON CONFLICT (block_hash, log_index) DO NOTHING
"""

UPSERT_CHECKPOINT_SQL = """
INSERT INTO checkpoint (id, last_block_number, last_block_hash, updated_at)
VALUES (1, %s, %s, %s)
ON CONFLICT (id) DO UPDATE SET
  last_block_number = EXCLUDED.last_block_number,
  last_block_hash   = EXCLUDED.last_block_hash,
  updated_at        = EXCLUDED.updated_at
"""


class PostgresEventStore(EventStore):
    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        host: Optional[str] = None,
        port: int = 5432,
        username: Optional[str] = None,
        password: Optional[str] = None,
        name: Optional[str] = None,
        connect_timeout: int = 10,
    ):
        if not dsn and not host:
            raise ValueError("PostgresEventStore needs a dsn or a host")
        self.dsn = dsn
        self.params = {
            "host": host,
            "port": port,
            "user": username,
            "password": password,
            "dbname": name,
            "connect_timeout": connect_timeout,
        }
        self.conn = None
        self._lock = threading.Lock()

    def _ensure(self):
        if self.conn is not None and not self.conn.closed:
            return self.conn
        try:
            if self.dsn:
                self.conn = psycopg2.connect(self.dsn)
            else:
                self.conn = psycopg2.connect(**{k: v for k, v in self.params.items() if v is not None})
        except psycopg2.Error as e:
            self.conn = None
            raise PersistUnavailable(f"cannot connect to postgres: {e}") from e
        return self.conn

    def _translate(self, e: psycopg2.Error) -> PersistError:
        if isinstance(e, psycopg2.errors.UndefinedTable):
            return SchemaMissingError(f"postgres schema missing ({e}), run bootstrap first")
        if isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError)):
            # connection is unusable; force a reconnect on next use
            if self.conn is not None and self.conn.closed:
                self.conn = None
            return PersistUnavailable(f"postgres unavailable: {e}")
        return PersistError(f"postgres error: {e}")

    @contextmanager
    def _transaction(self):
        with self._lock:
            con = self._ensure()
            try:
                with con.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    yield cur
                con.commit()
            except psycopg2.Error as e:
                self._safe_rollback(con)
                raise self._translate(e) from e
            except BaseException:
                self._safe_rollback(con)
                raise

    @staticmethod
    def _safe_rollback(con) -> None:
        if con.closed:
            return
        try:
            con.rollback()
        except psycopg2.Error as e:
            log.warning("postgres rollback failed: %s", e)

    def setup(self) -> None:
        with self._lock:
            con = self._ensure()
            try:
                bootstrap(con, "postgres")
            except psycopg2.Error as e:
                self._safe_rollback(con)
                raise self._translate(e) from e

    def verify_schema(self) -> None:
        with self._transaction() as cur:
            cur.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = current_schema()"
            )
            present = {r["table_name"] for r in cur.fetchall()}
        missing = [t for t in REQUIRED_TABLES if t not in present]
        if missing:
            raise SchemaMissingError(f"postgres database is missing tables {missing}, run bootstrap first")

    def read_checkpoint(self) -> Optional[Checkpoint]:
        with self._transaction() as cur:
            cur.execute("SELECT last_block_number, last_block_hash FROM checkpoint WHERE id = 1")
            r = cur.fetchone()
        if r:
            return Checkpoint(int(r["last_block_number"]), r["last_block_hash"])
        return None

    def block_hashes(self, start: int, end: int) -> Dict[int, str]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT DISTINCT block_number, block_hash FROM events WHERE block_number BETWEEN %s AND %s",
                (int(start), int(end)),
            )
            rows = cur.fetchall()
        return {int(r["block_number"]): r["block_hash"] for r in rows}

    def commit(self, events: Iterable[Any], checkpoint: Checkpoint) -> int:
        inserted = 0
        with self._transaction() as cur:
            # row lock serializes concurrent writers on the checkpoint
            cur.execute("SELECT last_block_number FROM checkpoint WHERE id = 1 FOR UPDATE")
            r = cur.fetchone()
            if r is not None and checkpoint.last_block_number < int(r["last_block_number"]):
                raise PersistConflict(
                    f"checkpoint {checkpoint.last_block_number} is behind stored {r['last_block_number']}"
                )
            for ev in events:
                cur.execute(INSERT_EVENT_SQL, event_params(ev))
                inserted += cur.rowcount
            cur.execute(UPSERT_CHECKPOINT_SQL, (checkpoint.last_block_number, checkpoint.last_block_hash, utc_now()))
        return inserted

    def rollback(self, from_block: int) -> Optional[Checkpoint]:
        with self._transaction() as cur:
            cur.execute("SELECT last_block_number, last_block_hash FROM checkpoint WHERE id = 1 FOR UPDATE")
            r = cur.fetchone()
            cur.execute("DELETE FROM events WHERE block_number >= %s", (int(from_block),))
            deleted = cur.rowcount
            cp = Checkpoint(int(r["last_block_number"]), r["last_block_hash"]) if r else None
            if cp is not None and cp.last_block_number >= from_block:
                cur.execute(
                    "SELECT block_number, block_hash FROM events ORDER BY block_number DESC, log_index DESC LIMIT 1"
                )
                newest = cur.fetchone()
                if newest is None:
                    cur.execute("DELETE FROM checkpoint WHERE id = 1")
                    cp = None
                else:
                    cp = Checkpoint(int(newest["block_number"]), newest["block_hash"])
                    cur.execute(UPSERT_CHECKPOINT_SQL, (cp.last_block_number, cp.last_block_hash, utc_now()))
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
            where.append("block_number >= %s")
            params.append(int(from_block))
        if to_block is not None:
            where.append("block_number <= %s")
            params.append(int(to_block))
        if event_name:
            where.append("event_name = %s")
            params.append(event_name)
        sql = "SELECT * FROM events"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY block_number, log_index"
        if limit:
            sql += " LIMIT %s"
            params.append(int(limit))
        with self._transaction() as cur:
            cur.execute(sql, tuple(params))
            # jsonb comes back already decoded
            return [dict(r) for r in cur.fetchall()]

    def count_events(self) -> int:
        with self._transaction() as cur:
            cur.execute("SELECT COUNT(*) AS n FROM events")
            return int(cur.fetchone()["n"])

    def close(self) -> None:
        with self._lock:
            if self.conn is not None and not self.conn.closed:
                self.conn.close()
            self.conn = None
