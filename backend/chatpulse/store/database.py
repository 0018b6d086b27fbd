"""DuckDB connection shared by the user directory, message and group stores.

Database Schema:
    users table:
        - id: Sequence-assigned primary key
        - username / email: Unique
        - password_hash: Opaque to the relay core
        - online: Persisted online flag, reset at startup
        - last_active: Last connect/disconnect/login (UTC)
    messages table:
        - id: Sequence-assigned, doubles as the ordering tie-breaker
        - sender_id, and exactly one of recipient_id / group_id
        - content, message_type, media_url
        - is_read / is_seen: Monotonic flags
        - created_at: UTC timestamp
    chat_groups / group_members tables: groups and their membership

Concurrency:
    The DuckDB connection is NOT thread-safe. Every query runs in a worker
    thread (``asyncio.to_thread``) while holding ``self._lock``, so the event
    loop never blocks and queries never overlap. Each call is bounded by
    ``timeout`` and surfaces ``StoreTimeout`` instead of hanging. A call the
    caller gave up on is skipped if it has not started, interrupted if it is
    running, and rolled back rather than committed.

Usage:
    db = Database(":memory:")
    row = await db.run(lambda conn: conn.execute("SELECT 1").fetchone())
"""
import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

import duckdb

from chatpulse.errors import StoreFailure, StoreTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = (
    "CREATE SEQUENCE IF NOT EXISTS users_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER DEFAULT nextval('users_seq') PRIMARY KEY,
        username VARCHAR NOT NULL UNIQUE,
        email VARCHAR NOT NULL UNIQUE,
        password_hash VARCHAR NOT NULL,
        online BOOLEAN NOT NULL DEFAULT FALSE,
        last_active TIMESTAMP
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER DEFAULT nextval('messages_seq') PRIMARY KEY,
        sender_id INTEGER NOT NULL,
        recipient_id INTEGER,
        group_id INTEGER,
        content VARCHAR NOT NULL,
        message_type VARCHAR NOT NULL,
        media_url VARCHAR,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        is_seen BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP NOT NULL,
        CHECK ((recipient_id IS NULL) <> (group_id IS NULL))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(sender_id, recipient_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_group ON messages(group_id)",
    "CREATE SEQUENCE IF NOT EXISTS chat_groups_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS chat_groups (
        id INTEGER DEFAULT nextval('chat_groups_seq') PRIMARY KEY,
        name VARCHAR NOT NULL,
        admin_id INTEGER NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_members (
        group_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        PRIMARY KEY (group_id, user_id)
    )
    """,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form DuckDB ``TIMESTAMP`` columns hold."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class _Call:
    """Handshake between an awaiting coroutine and the worker running its query.

    ``abandoned`` is set when the caller gives up; ``committing`` once the
    worker has passed the point of no return. Both flips happen under
    ``Database._state_lock``, so exactly one of them wins.
    """

    __slots__ = ("abandoned", "committing")

    def __init__(self) -> None:
        self.abandoned = False
        self.committing = False


def _discard_outcome(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("[Store] Abandoned call ended with %r", task.exception())


class Database:
    """Owns the DuckDB connection and runs queries off the event loop.

    Every call runs in its own transaction. A call whose caller timed out
    is rolled back instead of committed, so ``StoreTimeout`` always means
    nothing was written.

    Attributes:
        path: DuckDB file path, or ``:memory:``.
        timeout: Upper bound in seconds for a single store call.
    """

    def __init__(self, path: str = ":memory:", timeout: float = 10.0) -> None:
        self.path = path
        self.timeout = timeout
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active: Optional[_Call] = None
        self._closed = False
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get the DuckDB connection, creating if needed."""
        if self._closed:
            raise StoreFailure("database closed")
        if self._connection is None:
            self._connection = duckdb.connect(self.path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables and sequences. Safe to call multiple times."""
        conn = self._get_connection()
        for statement in SCHEMA:
            conn.execute(statement)
        logger.info("[Store] Database ready at %s", self.path)

    def _call(self, fn: Callable[..., T], *args: Any, call: Optional[_Call] = None) -> T:
        call = call or _Call()
        with self._lock:
            conn = self._get_connection()
            with self._state_lock:
                if call.abandoned:
                    raise StoreTimeout("store call abandoned before it started")
                self._active = call
            try:
                conn.begin()
                try:
                    result = fn(conn, *args)
                    with self._state_lock:
                        if call.abandoned:
                            raise StoreTimeout("store call abandoned before commit")
                        call.committing = True
                    conn.commit()
                except BaseException:
                    self._rollback(conn)
                    raise
                return result
            except duckdb.Error as exc:
                raise StoreFailure(str(exc)) from exc
            finally:
                with self._state_lock:
                    self._active = None

    @staticmethod
    def _rollback(conn: duckdb.DuckDBPyConnection) -> None:
        try:
            conn.rollback()
        except duckdb.Error as exc:
            # A failed COMMIT has already ended the transaction.
            logger.debug("[Store] Rollback skipped: %s", exc)

    def _abandon(self, call: _Call) -> bool:
        """Give up on ``call``. Returns False if it is already committing."""
        with self._state_lock:
            if call.committing:
                return False
            call.abandoned = True
            if self._active is call and self._connection is not None:
                self._connection.interrupt()
        return True

    def call_sync(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(connection, *args)`` on the calling thread."""
        return self._call(fn, *args)

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(connection, *args)`` in a worker thread.

        Raises:
            StoreFailure: The query raised a DuckDB error, or the database is closed.
            StoreTimeout: The query did not finish within ``timeout``; its
                writes were rolled back or never started.
        """
        call = _Call()
        task = asyncio.ensure_future(asyncio.to_thread(self._call, fn, *args, call=call))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout)
        except asyncio.CancelledError:
            if self._abandon(call):
                task.add_done_callback(_discard_outcome)
            raise
        if done:
            return task.result()
        if not self._abandon(call):
            # Past the commit point; the write is durable, so report it.
            return await task
        task.add_done_callback(_discard_outcome)
        logger.error("[Store] Query exceeded %.1fs timeout", self.timeout)
        raise StoreTimeout(f"store call exceeded {self.timeout}s")

    def close(self) -> None:
        """Close the database connection. Later calls raise ``StoreFailure``."""
        with self._lock:
            self._closed = True
            if self._connection is not None:
                self._connection.close()
                self._connection = None
