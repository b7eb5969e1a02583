"""Shared DuckDB database for rooms, participants, messages, attachments and profiles.

All services share one connection so that unread counts and room listings can
be answered with joins. Calls are synchronous (DuckDB is embedded and fast for
this volume); a re-entrant lock serialises access from the FastAPI worker
thread and the test thread.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional, Sequence

import duckdb

from schoolchat.errors import StoreUnavailable

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS rooms_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id                     BIGINT PRIMARY KEY DEFAULT nextval('rooms_seq'),
        kind                   VARCHAR NOT NULL,
        name                   VARCHAR,
        creator_id             VARCHAR,
        direct_key             VARCHAR,
        created_at             TIMESTAMP NOT NULL,
        last_message_at        TIMESTAMP,
        last_message_id        BIGINT,
        last_message_preview   VARCHAR,
        last_message_sender_id VARCHAR,
        last_message_type      VARCHAR,
        is_disabled            BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS participants (
        room_id              BIGINT NOT NULL,
        user_id              VARCHAR NOT NULL,
        role                 VARCHAR NOT NULL DEFAULT 'member',
        joined_at            TIMESTAMP NOT NULL,
        last_read_message_id BIGINT NOT NULL DEFAULT 0,
        PRIMARY KEY (room_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id          BIGINT PRIMARY KEY DEFAULT nextval('messages_seq'),
        room_id     BIGINT NOT NULL,
        sender_id   VARCHAR NOT NULL,
        content     VARCHAR,
        type        VARCHAR NOT NULL DEFAULT 'text',
        attachment_key VARCHAR,
        reply_to_id BIGINT,
        created_at  TIMESTAMP NOT NULL,
        edited_at   TIMESTAMP,
        is_edited   BOOLEAN NOT NULL DEFAULT FALSE,
        is_deleted  BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id)",
    """
    CREATE TABLE IF NOT EXISTS attachments (
        storage_key       VARCHAR PRIMARY KEY,
        room_id           BIGINT NOT NULL,
        uploader_id       VARCHAR NOT NULL,
        original_filename VARCHAR,
        mime_type         VARCHAR NOT NULL,
        size_bytes        BIGINT NOT NULL,
        uploaded_at       TIMESTAMP NOT NULL,
        message_id        BIGINT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id           VARCHAR PRIMARY KEY,
        display_name VARCHAR NOT NULL,
        avatar_url   VARCHAR,
        role         VARCHAR NOT NULL DEFAULT 'student',
        updated_at   TIMESTAMP NOT NULL
    )
    """,
]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form DuckDB TIMESTAMP columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """Singleton wrapper around the DuckDB connection.

    Every DuckDB error is logged and re-raised as ``StoreUnavailable`` so
    callers only ever deal with the chat error taxonomy.
    """

    _instance: Optional["Database"] = None
    _default_db_path: str = "schoolchat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._lock = threading.RLock()
        try:
            self._conn = duckdb.connect(self._db_path)
            for statement in _SCHEMA:
                self._conn.execute(statement)
        except duckdb.Error as exc:
            logger.error("[Database] Failed to open %s: %s", self._db_path, exc)
            raise StoreUnavailable(f"Cannot open database: {exc}") from exc
        self._closed = False
        logger.info("[Database] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "Database":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None

    @property
    def db_path(self) -> str:
        return self._db_path

    # -----------------------------------------------------------------------
    # Query helpers
    # -----------------------------------------------------------------------

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> duckdb.DuckDBPyConnection:
        if self._closed:
            raise StoreUnavailable("Database is closed")
        with self._lock:
            try:
                return self._conn.execute(sql, list(params or []))
            except duckdb.Error as exc:
                logger.error("[Database] Query failed: %s", exc)
                raise StoreUnavailable(str(exc)) from exc

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[tuple]:
        with self._lock:
            return self._fetch(sql, params, many=False)

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[tuple]:
        with self._lock:
            return self._fetch(sql, params, many=True)

    def _fetch(self, sql, params, many):
        cursor = self.execute(sql, params)
        try:
            return cursor.fetchall() if many else cursor.fetchone()
        except duckdb.Error as exc:
            logger.error("[Database] Fetch failed: %s", exc)
            raise StoreUnavailable(str(exc)) from exc

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Run the enclosed statements atomically. Not re-entrant."""
        with self._lock:
            self.execute("BEGIN TRANSACTION")
            try:
                yield self
            except BaseException:
                try:
                    self._conn.execute("ROLLBACK")
                except duckdb.Error as exc:
                    logger.warning("[Database] Rollback failed: %s", exc)
                raise
            else:
                self.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
            logger.info("[Database] Closed db=%s", self._db_path)
