# storage/schema.py
# integer event arguments are stored as base 10 text inside args to avoid 64 bit overflow

CREATE_TABLE_EVENTS = """
CREATE TABLE IF NOT EXISTS events (
    block_hash       TEXT    NOT NULL,
    log_index        INTEGER NOT NULL,
    block_number     BIGINT  NOT NULL,
    transaction_hash TEXT    NOT NULL,
    address          TEXT    NOT NULL,
    event_name       TEXT    NOT NULL,
    args             TEXT    NOT NULL,
    PRIMARY KEY (block_hash, log_index)
);
"""

CREATE_TABLE_EVENTS_PG = """
CREATE TABLE IF NOT EXISTS events (
    block_hash       TEXT    NOT NULL,
    log_index        INTEGER NOT NULL,
    block_number     BIGINT  NOT NULL,
    transaction_hash TEXT    NOT NULL,
    address          TEXT    NOT NULL,
    event_name       TEXT    NOT NULL,
    args             JSONB   NOT NULL,
    PRIMARY KEY (block_hash, log_index)
);
"""

CREATE_INDEX_EVENTS_BLOCK = """
CREATE INDEX IF NOT EXISTS events_block_number_idx ON events (block_number, log_index);
"""

CREATE_TABLE_CHECKPOINT = """
CREATE TABLE IF NOT EXISTS checkpoint (
    id                INTEGER PRIMARY KEY CHECK (id = 1),
    last_block_number BIGINT  NOT NULL,
    last_block_hash   TEXT    NOT NULL,
    updated_at        TEXT    NOT NULL
);
"""

REQUIRED_TABLES = ("events", "checkpoint")


def statements(dialect: str = "sqlite"):
    events = CREATE_TABLE_EVENTS_PG if dialect == "postgres" else CREATE_TABLE_EVENTS
    return [events, CREATE_INDEX_EVENTS_BLOCK, CREATE_TABLE_CHECKPOINT]


def bootstrap(con, dialect: str = "sqlite") -> None:
    """
    Create the events and checkpoint tables.
    Safe to call repeatedly.
    """
    cur = con.cursor()
    for sql in statements(dialect):
        cur.execute(sql)
    con.commit()
