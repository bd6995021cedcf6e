"""Worker records and registry operations.

A Worker is created the moment a spawn attempt begins (status running,
empty container id) and is updated, never replaced, until it reaches a
terminal status.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..config.constants import (
    DEFAULT_MAX_ITERATIONS,
    SHORT_ID_LENGTH,
    TERMINAL_WORKER_STATUSES,
    WORKER_RETENTION_SECONDS,
    WORKER_STATUSES,
)
from ..database.connection import Database, format_timestamp, parse_timestamp, utcnow
from ..exceptions import DatabaseQueryError

logger = logging.getLogger(__name__)

_WORKER_COLUMNS = """
    w.id, w.container_id, w.thread_id, w.status, w.last_heartbeat,
    w.created_at, w.auth_mode, w.iteration, w.max_iterations
"""

# Owner display name: the thread name, or the drone name for drone workers
_OWNER_JOINS = """
    LEFT JOIN threads t ON t.id = w.thread_id
    LEFT JOIN drone_sessions ds ON ds.worker_id = w.id
    LEFT JOIN drones d ON d.id = ds.drone_id
"""


@dataclass
class Worker:
    """Represents one spawned container."""
    id: str
    container_id: str = ""
    thread_id: Optional[str] = None
    status: str = "running"  # 'running', 'completed', 'failed', 'killed'
    auth_mode: Optional[str] = None  # 'env', 'config', 'oauth'
    iteration: int = 0
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    last_heartbeat: Optional[datetime] = None
    created_at: Optional[datetime] = None
    owner_name: Optional[str] = field(default=None, compare=False)

    @property
    def short_id(self) -> str:
        return self.id[:SHORT_ID_LENGTH]

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def is_spawned(self) -> bool:
        """Whether the runtime has returned a container id for this worker."""
        return bool(self.container_id)

    @property
    def heartbeat_age(self) -> Optional[float]:
        """Seconds since the last heartbeat (UTC)."""
        if self.last_heartbeat is None:
            return None
        return (utcnow() - self.last_heartbeat).total_seconds()

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Worker":
        keys = row.keys()
        return cls(
            id=row["id"],
            container_id=row["container_id"] or "",
            thread_id=row["thread_id"],
            status=row["status"],
            auth_mode=row["auth_mode"],
            iteration=row["iteration"] or 0,
            max_iterations=row["max_iterations"],
            last_heartbeat=parse_timestamp(row["last_heartbeat"]),
            created_at=parse_timestamp(row["created_at"]),
            owner_name=row["owner_name"] if "owner_name" in keys else None,
        )


class WorkerRegistry:
    """Persistence for Worker records.

    Every write is its own ``BEGIN IMMEDIATE`` transaction. Status writes
    are conditioned on the record still being ``running``, so a terminal
    record never changes again.
    """

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, worker: Worker) -> None:
        """Insert a new worker record."""
        heartbeat = worker.last_heartbeat or utcnow()
        created = worker.created_at or heartbeat
        self.db.write(
            """
            INSERT INTO workers
            (id, container_id, thread_id, status, last_heartbeat, created_at,
             auth_mode, iteration, max_iterations)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                worker.id,
                worker.container_id,
                worker.thread_id,
                worker.status,
                format_timestamp(heartbeat),
                format_timestamp(created),
                worker.auth_mode,
                worker.iteration,
                worker.max_iterations,
            ),
        )
        logger.debug("Inserted worker %s (thread=%s)", worker.short_id, worker.thread_id)

    def update_status(self, worker_id: str, status: str) -> bool:
        """Move a running worker to ``status``.

        Returns:
            True if the record transitioned, False if it was already terminal
            or does not exist.
        """
        if status not in WORKER_STATUSES:
            raise DatabaseQueryError(f"Invalid worker status: {status}", worker_id=worker_id)
        changed = self.db.write(
            "UPDATE workers SET status = ? WHERE id = ? AND status = 'running'",
            (status, worker_id),
        )
        if changed:
            logger.info("Worker %s -> %s", worker_id[:SHORT_ID_LENGTH], status)
        return changed > 0

    def update_heartbeat(self, worker_id: str) -> bool:
        """Record a heartbeat for a running worker."""
        return self.db.write(
            "UPDATE workers SET last_heartbeat = datetime('now') "
            "WHERE id = ? AND status = 'running'",
            (worker_id,),
        ) > 0

    def update_iteration(self, worker_id: str, iteration: int) -> bool:
        """Set the iteration counter."""
        return self.db.write(
            "UPDATE workers SET iteration = ? WHERE id = ?",
            (iteration, worker_id),
        ) > 0

    def record_progress(self, worker_id: str, iteration: int) -> bool:
        """Heartbeat and iteration counter in a single write."""
        return self.db.write(
            "UPDATE workers SET iteration = ?, last_heartbeat = datetime('now') "
            "WHERE id = ? AND status = 'running'",
            (iteration, worker_id),
        ) > 0

    def update_container_id(self, worker_id: str, container_id: str) -> bool:
        """Store the runtime-assigned container id once spawn returns."""
        return self.db.write(
            "UPDATE workers SET container_id = ? WHERE id = ?",
            (container_id, worker_id),
        ) > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, worker_id: str) -> Optional[Worker]:
        row = self.db.query_one(
            f"""
            SELECT {_WORKER_COLUMNS}, COALESCE(t.name, d.name) AS owner_name
            FROM workers w {_OWNER_JOINS}
            WHERE w.id = ?
            """,
            (worker_id,),
        )
        return Worker.from_row(row) if row else None

    def list_active(self) -> List[Worker]:
        """Running workers with their owner's display name."""
        rows = self.db.query(
            f"""
            SELECT {_WORKER_COLUMNS}, COALESCE(t.name, d.name) AS owner_name
            FROM workers w {_OWNER_JOINS}
            WHERE w.status = 'running'
            ORDER BY w.created_at DESC
            """
        )
        return [Worker.from_row(row) for row in rows]

    def active_ids(self) -> set[str]:
        rows = self.db.query("SELECT id FROM workers WHERE status = 'running'")
        return {row["id"] for row in rows}

    def list_stale(self, timeout_seconds: float) -> List[Worker]:
        """Running workers whose heartbeat is older than ``timeout_seconds``."""
        rows = self.db.query(
            f"""
            SELECT {_WORKER_COLUMNS}, COALESCE(t.name, d.name) AS owner_name
            FROM workers w {_OWNER_JOINS}
            WHERE w.status = 'running'
              AND (julianday('now') - julianday(w.last_heartbeat)) * 86400 > ?
            ORDER BY w.last_heartbeat ASC
            """,
            (timeout_seconds,),
        )
        return [Worker.from_row(row) for row in rows]

    def list_for_owner(self, thread_id: str) -> List[Worker]:
        """All workers for a thread, newest first."""
        rows = self.db.query(
            f"""
            SELECT {_WORKER_COLUMNS}, t.name AS owner_name
            FROM workers w LEFT JOIN threads t ON t.id = w.thread_id
            WHERE w.thread_id = ?
            ORDER BY w.created_at DESC, w.rowid DESC
            """,
            (thread_id,),
        )
        return [Worker.from_row(row) for row in rows]

    def list_all(self, limit: int = 50) -> List[Worker]:
        """Recent workers in any status, newest first."""
        rows = self.db.query(
            f"""
            SELECT {_WORKER_COLUMNS}, COALESCE(t.name, d.name) AS owner_name
            FROM workers w {_OWNER_JOINS}
            ORDER BY w.created_at DESC, w.rowid DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [Worker.from_row(row) for row in rows]

    def find_by_prefix(self, prefix: str, running_only: bool = True) -> List[Worker]:
        """Workers whose id starts with ``prefix``."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        status_clause = "AND w.status = 'running'" if running_only else ""
        rows = self.db.query(
            f"""
            SELECT {_WORKER_COLUMNS}, COALESCE(t.name, d.name) AS owner_name
            FROM workers w {_OWNER_JOINS}
            WHERE w.id LIKE ? ESCAPE '\\' {status_clause}
            ORDER BY w.created_at DESC
            """,
            (escaped + "%",),
        )
        return [Worker.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_old(self, terminal_age_seconds: float = WORKER_RETENTION_SECONDS) -> int:
        """Delete terminal records older than the retention window.

        Workers still referenced by a drone session are kept.

        Returns:
            Number of records deleted.
        """
        placeholders = ", ".join("?" for _ in TERMINAL_WORKER_STATUSES)
        deleted = self.db.write(
            f"""
            DELETE FROM workers
            WHERE status IN ({placeholders})
              AND (julianday('now') - julianday(created_at)) * 86400 > ?
              AND id NOT IN (
                  SELECT worker_id FROM drone_sessions WHERE worker_id IS NOT NULL
              )
            """,
            (*TERMINAL_WORKER_STATUSES, terminal_age_seconds),
        )
        if deleted:
            logger.info("Purged %d old worker records", deleted)
        return deleted
