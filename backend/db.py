import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg
from psycopg.rows import dict_row

from . import config

# Raised by either backend on read/write failure.
PERSISTENCE_ERRORS = (sqlite3.Error, psycopg.Error)


_PG_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        start_time TEXT NOT NULL,
        last_active TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq SERIAL PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        convo_id TEXT NOT NULL,
        sender TEXT NOT NULL,
        content TEXT NOT NULL,
        message_type TEXT NOT NULL,
        file_id TEXT,
        is_error INTEGER DEFAULT 0,
        model TEXT,
        ts TEXT NOT NULL,
        CONSTRAINT fk_convo FOREIGN KEY(convo_id) REFERENCES conversations(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profiles (
        user_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        preferences TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS files (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        file_name TEXT NOT NULL,
        filename TEXT NOT NULL,
        path TEXT NOT NULL,
        file_type TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        size BIGINT NOT NULL,
        upload_time TEXT NOT NULL
    )
    """,
)

_SQLITE_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        start_time TEXT NOT NULL,
        last_active TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        convo_id TEXT NOT NULL,
        sender TEXT NOT NULL,
        content TEXT NOT NULL,
        message_type TEXT NOT NULL,
        file_id TEXT,
        is_error INTEGER DEFAULT 0,
        model TEXT,
        ts TEXT NOT NULL,
        FOREIGN KEY(convo_id) REFERENCES conversations(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profiles (
        user_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        preferences TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS files (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        file_name TEXT NOT NULL,
        filename TEXT NOT NULL,
        path TEXT NOT NULL,
        file_type TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        size INTEGER NOT NULL,
        upload_time TEXT NOT NULL
    )
    """,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_messages_convo ON messages(convo_id, seq)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id, last_active)",
    "CREATE INDEX IF NOT EXISTS idx_files_user ON files(user_id, upload_time)",
)


class Database:
    """SQLite by default, PostgreSQL when a database URL is configured."""

    def __init__(self, url: Optional[str] = None, sqlite_path: Optional[str] = None):
        self.url = url
        self.use_pg = bool(url)
        self.sqlite_path = sqlite_path or config.sqlite_path()
        self._init_lock = threading.Lock()
        self.ensure_tables()

    @classmethod
    def from_env(cls) -> "Database":
        return cls(url=config.database_url())

    def ph(self, count: int = 1) -> str:
        token = "%s" if self.use_pg else "?"
        return ", ".join([token] * count)

    def _connect_pg(self):
        return psycopg.connect(self.url, row_factory=dict_row)  # type: ignore[arg-type]

    def _connect_sqlite(self):
        os.makedirs(os.path.dirname(os.path.abspath(self.sqlite_path)), exist_ok=True)
        conn = sqlite3.connect(self.sqlite_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def connect(self):
        if self.use_pg:
            return self._connect_pg()
        return self._connect_sqlite()

    @contextmanager
    def transaction(self) -> Iterator:
        """Yield a cursor; commit on success, roll back on any error."""
        conn = self.connect()
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        with self._init_lock:
            with self.transaction() as cur:
                for ddl in _PG_TABLES if self.use_pg else _SQLITE_TABLES:
                    cur.execute(ddl)
                for ddl in _INDEXES:
                    cur.execute(ddl)
