"""
core/database.py -- Shared SQLAlchemy engine and transaction boundary.

One Database is built at startup and passed explicitly to every store and
service constructor. Nothing in Scriptoria reaches for a module-level engine.

Transactions:
  Database.transaction() yields a Connection inside a write transaction and
  commits on clean exit / rolls back on any exception, including client
  disconnect cancellation surfacing as an exception in the handler.

  On SQLite the write transaction is opened with BEGIN IMMEDIATE, which takes
  the database write lock up front. Two requests racing on the same lockout
  counter or the same document therefore serialize: the second one waits
  (busy timeout) and then reads the first one's committed state. pysqlite's
  own implicit BEGIN handling is disabled so the explicit BEGIN is the only
  one emitted (SQLAlchemy "Serializable isolation / Savepoints" recipe).

  Passing an existing Connection as `conn` joins the caller's transaction
  instead of opening a new one. Components that compose (LoginGuard calling
  TokenLedger.issue) use this so the whole operation commits atomically.

  Never open a second connection while a transaction is in progress on the
  same thread: in-memory databases share a single DBAPI connection.

Layer rule: core/ is the kernel. No imports from other Scriptoria packages.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from core.schema import metadata

logger = logging.getLogger("scriptoria.database")

_BUSY_TIMEOUT_SECONDS = 15


def _is_memory_url(url: str) -> bool:
    return ":memory:" in url or "mode=memory" in url


# ---------------------------------------------------------------------------
# SQLite connection hooks
# ---------------------------------------------------------------------------


def _on_connect(dbapi_conn, connection_record) -> None:
    """Per-connection PRAGMAs. SQLite does not inherit them across connections.

    WAL lets readers proceed while a writer holds the lock. foreign_keys=ON
    makes the ON DELETE rules in core/schema.py take effect.
    """
    # Disable pysqlite's implicit BEGIN; _on_begin emits our own.
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_begin(conn: Connection) -> None:
    if conn.get_execution_options().get("write_lock"):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------


class Database:
    """Engine owner and transaction factory.

    Usage:
        db = Database("sqlite:///:memory:")
        db.create_schema()
        with db.transaction() as conn:
            conn.execute(...)
        db.close()
    """

    def __init__(self, url: str) -> None:
        self.url = url
        kwargs: dict = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": _BUSY_TIMEOUT_SECONDS}
            if _is_memory_url(url):
                # One shared connection keeps the in-memory database alive and
                # visible to every thread (TestClient runs handlers in a pool).
                kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(url, **kwargs)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _on_connect)
            event.listen(self.engine, "begin", _on_begin)

    def create_schema(self) -> None:
        """Create every table that does not exist yet. Idempotent."""
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self, conn: Connection | None = None) -> Iterator[Connection]:
        """Yield a connection inside an atomic write transaction.

        If `conn` is given, the caller already owns a transaction: yield it
        unchanged and leave commit/rollback to the caller.
        """
        if conn is not None:
            yield conn
            return
        with self.engine.connect() as new_conn:
            new_conn.execution_options(write_lock=True)
            with new_conn.begin():
                yield new_conn

    @contextmanager
    def connect(self, conn: Connection | None = None) -> Iterator[Connection]:
        """Yield a connection for reads, reusing `conn` if the caller has one.

        Reads inside a write transaction must go through the transaction's
        connection so they see its uncommitted state.
        """
        if conn is not None:
            yield conn
            return
        with self.engine.connect() as new_conn:
            yield new_conn

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health check."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()
