"""
Database connection management for blackboard.

The database file is shared by the orchestrator process and by the agent
process inside every container, so each logical write runs in its own
``BEGIN IMMEDIATE`` transaction and lock contention surfaces as a
retryable ``DatabaseBusyError``.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from ..config.constants import SQLITE_BUSY_TIMEOUT_SECONDS
from ..exceptions import DatabaseBusyError, DatabaseError, DatabaseQueryError
from . import migrations

logger = logging.getLogger(__name__)

# SQLite's datetime('now') format, always UTC
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, matching stored timestamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_timestamp(dt: datetime) -> str:
    """Render a datetime in the format SQLite's datetime('now') produces."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp into a naive UTC datetime."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug("Unparseable timestamp: %r", value)
        return None


def translate_error(error: sqlite3.Error, sql: Optional[str] = None) -> DatabaseError:
    """Map a sqlite3 error onto the blackboard hierarchy."""
    message = str(error)
    lowered = message.lower()
    if isinstance(error, sqlite3.OperationalError) and (
        "locked" in lowered or "busy" in lowered
    ):
        return DatabaseBusyError(message)
    return DatabaseQueryError(message, query=sql)


class Database:
    """SQLite handle injected into every store.

    Usage:
        with Database(path) as db:
            registry = WorkerRegistry(db)

    or ``db = Database(path).open()`` followed by ``db.close()``.
    """

    def __init__(self, db_path: Path, busy_timeout: float = SQLITE_BUSY_TIMEOUT_SECONDS):
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._conn: Optional[sqlite3.Connection] = None

    def open(self) -> "Database":
        """Open the connection and bring the schema up to date."""
        if self._conn is not None:
            return self

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # isolation_level=None: transactions are issued explicitly
            conn = sqlite3.connect(
                str(self.db_path), timeout=self.busy_timeout, isolation_level=None
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            migrations.run_migrations(conn)
        except sqlite3.Error as e:
            raise translate_error(e) from e

        self._conn = conn
        logger.debug("Opened database %s", self.db_path)
        return self

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Closed database %s", self.db_path)

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseError("Database is not open", path=str(self.db_path))
        return self._conn

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE``.

        The write lock is taken before any statement runs, so a
        read-then-write inside the block cannot interleave with another
        writer. Rolls back on any exception.
        """
        conn = self.conn
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise translate_error(e) from e

        try:
            yield conn
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise translate_error(e) from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise

        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise translate_error(e) from e

    def write(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a single write statement in its own transaction.

        Returns:
            Number of rows affected.
        """
        with self.transaction() as conn:
            try:
                return conn.execute(sql, params).rowcount
            except sqlite3.Error as e:
                raise translate_error(e, sql) from e

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Run a read query and return every row."""
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise translate_error(e, sql) from e

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        """Run a read query and return the first row, if any."""
        try:
            return self.conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise translate_error(e, sql) from e
