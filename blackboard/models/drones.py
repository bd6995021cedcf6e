"""Drone definitions, drone sessions and the worker event log.

A drone is a persistent prompt that runs in its own container on a fresh
git branch. Each start creates a DroneSession; at most one session per
drone may be running at a time.
"""

import logging
import re
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from ..config.constants import (
    DEFAULT_DRONE_COOLDOWN_SECONDS,
    DEFAULT_DRONE_MAX_ITERATIONS,
    DEFAULT_DRONE_TIMEOUT_MINUTES,
    DEFAULT_LOG_LIMIT,
)
from ..database.connection import Database, parse_timestamp
from ..exceptions import DroneAlreadyRunningError, DroneNotFoundError

logger = logging.getLogger(__name__)

DRONE_NAME_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
SESSION_STATUSES = ("running", "completed", "stopped", "failed")


@dataclass
class Drone:
    """A persistent prompt configuration."""
    id: str
    name: str
    prompt: str
    max_iterations: int = DEFAULT_DRONE_MAX_ITERATIONS
    timeout_minutes: int = DEFAULT_DRONE_TIMEOUT_MINUTES
    cooldown_seconds: int = DEFAULT_DRONE_COOLDOWN_SECONDS
    status: str = "active"  # 'active', 'paused', 'archived'
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Drone":
        return cls(
            id=row["id"],
            name=row["name"],
            prompt=row["prompt"],
            max_iterations=row["max_iterations"],
            timeout_minutes=row["timeout_minutes"],
            cooldown_seconds=row["cooldown_seconds"],
            status=row["status"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class DroneSession:
    """One run of a drone, bound to a single worker."""
    id: str
    drone_id: str
    worker_id: Optional[str]
    git_branch: Optional[str]
    status: str = "running"  # 'running', 'completed', 'stopped', 'failed'
    iteration: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    stop_reason: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DroneSession":
        return cls(
            id=row["id"],
            drone_id=row["drone_id"],
            worker_id=row["worker_id"],
            git_branch=row["git_branch"],
            status=row["status"],
            iteration=row["iteration"] or 0,
            started_at=parse_timestamp(row["started_at"]),
            ended_at=parse_timestamp(row["ended_at"]),
            stop_reason=row["stop_reason"],
        )


@dataclass
class WorkerEvent:
    """A structured entry written by an in-container agent."""
    id: int
    worker_id: str
    iteration: int
    timestamp: Optional[datetime]
    event_type: str  # 'tool_call', 'tool_result', 'text', 'error', 'system'
    tool_name: Optional[str] = None
    tool_input: Optional[str] = None
    tool_output_preview: Optional[str] = None
    file_path: Optional[str] = None
    duration_ms: Optional[int] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "WorkerEvent":
        return cls(
            id=row["id"],
            worker_id=row["worker_id"],
            iteration=row["iteration"],
            timestamp=parse_timestamp(row["timestamp"]),
            event_type=row["event_type"],
            tool_name=row["tool_name"],
            tool_input=row["tool_input"],
            tool_output_preview=row["tool_output_preview"],
            file_path=row["file_path"],
            duration_ms=row["duration_ms"],
        )


def validate_drone_name(name: str) -> None:
    """Drone names are kebab-case: lowercase letters, digits and single hyphens."""
    if not DRONE_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid drone name '{name}': use kebab-case (e.g. 'dep-updater')"
        )


class DroneStore:
    """Drone, session and event queries."""

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Drones
    # ------------------------------------------------------------------

    def create(
        self,
        name: str,
        prompt: str,
        max_iterations: int = DEFAULT_DRONE_MAX_ITERATIONS,
        timeout_minutes: int = DEFAULT_DRONE_TIMEOUT_MINUTES,
        cooldown_seconds: int = DEFAULT_DRONE_COOLDOWN_SECONDS,
    ) -> Drone:
        """Create a drone. Raises ValueError for bad names or duplicates."""
        validate_drone_name(name)
        if not prompt.strip():
            raise ValueError("Drone prompt cannot be empty")

        drone_id = uuid.uuid4().hex
        with self.db.transaction() as conn:
            existing = conn.execute("SELECT 1 FROM drones WHERE name = ?", (name,)).fetchone()
            if existing:
                raise ValueError(f'Drone "{name}" already exists')
            conn.execute(
                """
                INSERT INTO drones
                (id, name, prompt, max_iterations, timeout_minutes, cooldown_seconds)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (drone_id, name, prompt, max_iterations, timeout_minutes, cooldown_seconds),
            )
        logger.info("Created drone %s (%s)", name, drone_id[:8])
        return self.get(drone_id)

    def get(self, name_or_id: str) -> Optional[Drone]:
        """Look a drone up by id, then by name."""
        row = self.db.query_one("SELECT * FROM drones WHERE id = ?", (name_or_id,))
        if row is None:
            row = self.db.query_one("SELECT * FROM drones WHERE name = ?", (name_or_id,))
        return Drone.from_row(row) if row else None

    def require(self, name_or_id: str) -> Drone:
        drone = self.get(name_or_id)
        if drone is None:
            raise DroneNotFoundError(name_or_id)
        return drone

    def list(self, status: Optional[str] = None) -> List[Drone]:
        if status:
            rows = self.db.query(
                "SELECT * FROM drones WHERE status = ? ORDER BY updated_at DESC", (status,)
            )
        else:
            rows = self.db.query("SELECT * FROM drones ORDER BY updated_at DESC")
        return [Drone.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        drone: Drone,
        worker_id: Optional[str],
        git_branch: Optional[str],
        session_id: Optional[str] = None,
    ) -> DroneSession:
        """Create a running session.

        The running-session check and the insert share one write
        transaction, so two concurrent starts cannot both succeed.

        Raises:
            DroneAlreadyRunningError: If the drone already has a running session.
        """
        session_id = session_id or uuid.uuid4().hex
        with self.db.transaction() as conn:
            running = conn.execute(
                "SELECT id FROM drone_sessions WHERE drone_id = ? AND status = 'running'",
                (drone.id,),
            ).fetchone()
            if running:
                raise DroneAlreadyRunningError(drone.name, running["id"])
            conn.execute(
                """
                INSERT INTO drone_sessions (id, drone_id, worker_id, git_branch)
                VALUES (?, ?, ?, ?)
                """,
                (session_id, drone.id, worker_id, git_branch),
            )
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> Optional[DroneSession]:
        row = self.db.query_one("SELECT * FROM drone_sessions WHERE id = ?", (session_id,))
        return DroneSession.from_row(row) if row else None

    def current_session(self, drone: Drone) -> Optional[DroneSession]:
        """The drone's running session, if any."""
        row = self.db.query_one(
            """
            SELECT * FROM drone_sessions
            WHERE drone_id = ? AND status = 'running'
            ORDER BY started_at DESC
            LIMIT 1
            """,
            (drone.id,),
        )
        return DroneSession.from_row(row) if row else None

    def list_sessions(self, drone: Drone, limit: int = 10) -> List[DroneSession]:
        rows = self.db.query(
            """
            SELECT * FROM drone_sessions
            WHERE drone_id = ?
            ORDER BY started_at DESC, rowid DESC
            LIMIT ?
            """,
            (drone.id, limit),
        )
        return [DroneSession.from_row(row) for row in rows]

    def update_session_status(
        self, session_id: str, status: str, stop_reason: Optional[str] = None
    ) -> bool:
        """End a running session. Terminal sessions are left untouched."""
        if status not in SESSION_STATUSES:
            raise ValueError(f"Invalid session status: {status}")
        ended = "datetime('now')" if status != "running" else "NULL"
        changed = self.db.write(
            f"""
            UPDATE drone_sessions
            SET status = ?, stop_reason = COALESCE(?, stop_reason), ended_at = {ended}
            WHERE id = ? AND status = 'running'
            """,
            (status, stop_reason, session_id),
        )
        return changed > 0

    def record_session_iteration(self, worker_id: str, iteration: int) -> bool:
        """Mirror a worker's iteration onto its running session, if it has one."""
        return self.db.write(
            "UPDATE drone_sessions SET iteration = ? WHERE worker_id = ? AND status = 'running'",
            (iteration, worker_id),
        ) > 0

    # ------------------------------------------------------------------
    # Worker events
    # ------------------------------------------------------------------

    def list_events(
        self,
        worker_ids: List[str],
        limit: int = DEFAULT_LOG_LIMIT,
        tool: Optional[str] = None,
        file_path: Optional[str] = None,
        after_id: Optional[int] = None,
    ) -> List[WorkerEvent]:
        """Events for the given workers, oldest first.

        Without ``after_id`` the most recent ``limit`` events are returned;
        with it, every newer event (used by follow mode).
        """
        if not worker_ids:
            return []

        placeholders = ", ".join("?" for _ in worker_ids)
        clauses = [f"worker_id IN ({placeholders})"]
        params: list = list(worker_ids)
        if tool:
            clauses.append("tool_name = ?")
            params.append(tool)
        if file_path:
            clauses.append("file_path LIKE ?")
            params.append(f"%{file_path}%")
        if after_id is not None:
            clauses.append("id > ?")
            params.append(after_id)

        where = " AND ".join(clauses)
        if after_id is not None:
            rows = self.db.query(
                f"SELECT * FROM worker_events WHERE {where} ORDER BY id ASC", params
            )
        else:
            rows = self.db.query(
                f"SELECT * FROM worker_events WHERE {where} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            )
            rows = list(reversed(rows))
        return [WorkerEvent.from_row(row) for row in rows]

    def session_worker_ids(self, drone: Drone) -> List[str]:
        """Worker ids of every session of the drone, newest first."""
        rows = self.db.query(
            """
            SELECT worker_id FROM drone_sessions
            WHERE drone_id = ? AND worker_id IS NOT NULL
            ORDER BY started_at DESC
            """,
            (drone.id,),
        )
        return [row["worker_id"] for row in rows]
