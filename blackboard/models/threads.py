"""Read-only view of threads and their plans.

Threads and plans are written by other blackboard tools; the farm only
needs to resolve them by name, list the active ones, and ask whether the
current plan still has pending steps.
"""

import sqlite3
from dataclasses import dataclass
from typing import List, Optional, Protocol

from ..database.connection import Database


@dataclass
class Thread:
    """A named unit of work with an optional current plan."""
    id: str
    name: str
    status: str  # 'active', 'paused', 'completed', 'archived'
    current_plan_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Thread":
        return cls(
            id=row["id"],
            name=row["name"],
            status=row["status"],
            current_plan_id=row["current_plan_id"],
        )


class WorkSource(Protocol):
    """What the fleet orchestrator needs from its work items."""

    def get_by_name(self, name: str) -> Optional[Thread]: ...

    def list_active(self) -> List[Thread]: ...

    def has_pending_work(self, thread: Thread) -> bool: ...


class ThreadStore:
    """Thread and plan queries over the shared database."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, thread_id: str) -> Optional[Thread]:
        row = self.db.query_one(
            "SELECT id, name, status, current_plan_id FROM threads WHERE id = ?",
            (thread_id,),
        )
        return Thread.from_row(row) if row else None

    def get_by_name(self, name: str) -> Optional[Thread]:
        row = self.db.query_one(
            "SELECT id, name, status, current_plan_id FROM threads WHERE name = ?",
            (name,),
        )
        return Thread.from_row(row) if row else None

    def list_active(self) -> List[Thread]:
        rows = self.db.query(
            """
            SELECT id, name, status, current_plan_id FROM threads
            WHERE status = 'active'
            ORDER BY updated_at DESC
            """
        )
        return [Thread.from_row(row) for row in rows]

    def pending_step_count(self, thread: Thread) -> int:
        """Pending steps in the thread's current plan, read fresh from the database."""
        row = self.db.query_one(
            """
            SELECT COUNT(*) AS n
            FROM plan_steps ps
            JOIN threads t ON t.current_plan_id = ps.plan_id
            WHERE t.id = ? AND ps.status = 'pending'
            """,
            (thread.id,),
        )
        return row["n"] if row else 0

    def has_pending_work(self, thread: Thread) -> bool:
        """True when the thread's current plan has at least one pending step."""
        return self.pending_step_count(thread) > 0
