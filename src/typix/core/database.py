"""SQLite persistence for chats, messages, generations, files and overrides."""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Columns stored as JSON text and decoded on read
JSON_COLUMNS = frozenset({"settings", "metadata", "parameters", "file_ids"})

SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    storage TEXT NOT NULL CHECK (storage IN ('base64', 'disk')),
    url TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS message_generations (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL DEFAULT 'image' CHECK (type IN ('image', 'video')),
    user_id TEXT NOT NULL,
    prompt TEXT NOT NULL,
    parameters TEXT,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'generating', 'completed', 'failed')),
    file_ids TEXT,
    error_reason TEXT,
    generation_time REAL,
    cost REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    type TEXT NOT NULL DEFAULT 'text' CHECK (type IN ('text', 'image')),
    generation_id TEXT REFERENCES message_generations(id) ON DELETE SET NULL,
    metadata TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS message_attachments (
    id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    file_id TEXT NOT NULL REFERENCES files(id) ON DELETE CASCADE,
    type TEXT NOT NULL DEFAULT 'image' CHECK (type IN ('image')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ai_providers (
    id TEXT PRIMARY KEY,
    provider_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    settings TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, provider_id)
);

CREATE TABLE IF NOT EXISTS ai_models (
    id TEXT PRIMARY KEY,
    provider_id TEXT NOT NULL,
    model_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, provider_id, model_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_chat_created
    ON messages(chat_id, created_at);
CREATE INDEX IF NOT EXISTS idx_chats_user_created
    ON chats(user_id, created_at DESC);
"""


def row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    """Convert a row to a plain dict, decoding JSON columns.

    Args:
        row: Row returned by a cursor, or None

    Returns:
        Dictionary keyed by column name, or None when ``row`` is None
    """
    if row is None:
        return None
    result = dict(row)
    for key in JSON_COLUMNS.intersection(result):
        if result[key] is not None:
            result[key] = json.loads(result[key])
    return result


def to_json(value: Any) -> str | None:
    """Encode a value for a JSON column (None stays NULL)."""
    if value is None:
        return None
    return json.dumps(value)


class Database:
    """Thin wrapper around a SQLite database file.

    Every call to :meth:`connect` opens a fresh connection, so one instance
    can be shared between request handlers running on different threads.
    """

    def __init__(self, db_path: Path):
        """Initialize the database and create the schema if needed.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info(f"Initialized database at {self.db_path}")

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and roll back on error.

        Yields:
            Connection with ``sqlite3.Row`` rows and foreign keys enforced
        """
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def fetch_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        with self.connect() as conn:
            return row_to_dict(conn.execute(sql, params).fetchone())

    def fetch_all(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self.connect() as conn:
            return [row_to_dict(row) for row in conn.execute(sql, params).fetchall()]

    def execute(self, sql: str, params: tuple = ()) -> int:
        """Run a single write statement.

        Returns:
            Number of affected rows
        """
        with self.connect() as conn:
            return conn.execute(sql, params).rowcount
