from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import logging
import sqlite3

import psycopg2
from psycopg2.extras import RealDictCursor

from flowsync import config

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL
DB_PATH = config.DB_PATH
DB_BACKEND = "postgres" if DATABASE_URL else "sqlite"
_db_ready = False

INTEGRITY_ERRORS = (sqlite3.IntegrityError, psycopg2.IntegrityError)
DATABASE_ERRORS = (sqlite3.Error, psycopg2.Error)


class DBConn:
    """Connection wrapper that speaks `?` placeholders on both backends.

    Used as a context manager: commits on a clean exit, rolls back when the
    block raises, and always closes the underlying connection.
    """

    def __init__(self, conn, backend: str):
        self.conn = conn
        self.backend = backend

    def execute(self, query: str, params: tuple | list = ()):
        if self.backend == "postgres":
            sql = query.replace("?", "%s")
            cur = self.conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(sql, params)
            return cur
        return self.conn.execute(query, params)

    def executescript(self, script: str) -> None:
        if self.backend == "postgres":
            statements = [s.strip() for s in script.split(";") if s.strip()]
            for statement in statements:
                self.execute(statement)
        else:
            self.conn.executescript(script)

    def begin(self, timeout_seconds: int | None = None) -> None:
        """Open the write transaction explicitly.

        SQLite takes the write lock up front so two batches for the same
        user cannot both read the ledger before either writes to it.
        """
        if self.backend == "postgres":
            if timeout_seconds:
                self.execute(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}")
            return
        self.conn.execute("BEGIN IMMEDIATE")

    @contextmanager
    def savepoint(self, name: str):
        self.execute(f"SAVEPOINT {name}")
        try:
            yield self
        except Exception:
            self.execute(f"ROLLBACK TO SAVEPOINT {name}")
            raise
        else:
            self.execute(f"RELEASE SAVEPOINT {name}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                self.conn.commit()
            else:
                self.conn.rollback()
        finally:
            self.conn.close()


def get_conn() -> DBConn:
    if DB_BACKEND == "postgres":
        conn = psycopg2.connect(DATABASE_URL)
        return DBConn(conn, "postgres")
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    return DBConn(conn, "sqlite")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id {serial},
    username TEXT NOT NULL UNIQUE,
    is_admin INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS flows (
    id TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    tracking_type TEXT NOT NULL DEFAULT 'Binary',
    frequency TEXT NOT NULL DEFAULT 'Daily',
    days_of_week TEXT NOT NULL DEFAULT '[]',
    archived INTEGER NOT NULL DEFAULT 0,
    storage_preference TEXT NOT NULL DEFAULT 'cloud',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_flows_user ON flows (user_id, deleted_at);

CREATE TABLE IF NOT EXISTS flow_entries (
    id TEXT PRIMARY KEY,
    flow_id TEXT NOT NULL,
    user_id INTEGER NOT NULL,
    entry_date TEXT NOT NULL,
    symbol TEXT NOT NULL,
    mood_score INTEGER,
    note TEXT NOT NULL DEFAULT '',
    quantitative TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS unique_flow_entry_date
    ON flow_entries (flow_id, entry_date) WHERE deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS sync_log (
    id {serial},
    user_id INTEGER NOT NULL,
    idempotency_key TEXT NOT NULL,
    operation_type TEXT NOT NULL,
    request_payload TEXT,
    response_payload TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, idempotency_key)
);

CREATE INDEX IF NOT EXISTS idx_sync_log_created ON sync_log (created_at);

CREATE TABLE IF NOT EXISTS sync_queue (
    id TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    payload TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{{}}',
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    result TEXT,
    next_attempt_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue (status, created_at)
"""


def init_db() -> None:
    serial = "SERIAL PRIMARY KEY" if DB_BACKEND == "postgres" else "INTEGER PRIMARY KEY AUTOINCREMENT"
    with get_conn() as conn:
        conn.executescript(SCHEMA.format(serial=serial))
    logger.info("Schema ready on %s backend", DB_BACKEND)


def ensure_db() -> None:
    global _db_ready
    if not _db_ready:
        init_db()
        _db_ready = True
