"""Database migration system for blackboard."""

import logging
import sqlite3
from typing import Callable

logger = logging.getLogger(__name__)


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get the current schema version."""
    cursor = conn.cursor()
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    """
    )

    cursor.execute("SELECT MAX(version) FROM schema_version")
    result = cursor.fetchone()
    # -1 for a fresh file so migration 0 runs
    return result[0] if result[0] is not None else -1


def set_schema_version(conn: sqlite3.Connection, version: int):
    """Set the schema version."""
    conn.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (version,))


def migration_000_thread_tables(conn: sqlite3.Connection):
    """Create the thread and plan tables if no other tool has yet.

    These tables belong to the wider blackboard plugin; the coordination
    layer only reads them.
    """
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS threads (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            current_plan_id TEXT,
            git_branches TEXT,
            status TEXT NOT NULL DEFAULT 'active'
                CHECK(status IN ('active', 'paused', 'completed', 'archived'))
        );

        CREATE TABLE IF NOT EXISTS plans (
            id TEXT PRIMARY KEY,
            created_at TEXT DEFAULT (datetime('now')),
            status TEXT DEFAULT 'accepted'
                CHECK(status IN ('accepted', 'in_progress', 'completed', 'abandoned')),
            description TEXT,
            plan_markdown TEXT NOT NULL,
            session_id TEXT,
            thread_id TEXT REFERENCES threads(id)
        );

        CREATE TABLE IF NOT EXISTS plan_steps (
            id TEXT PRIMARY KEY,
            plan_id TEXT NOT NULL REFERENCES plans(id) ON DELETE CASCADE,
            step_order INTEGER NOT NULL,
            description TEXT NOT NULL,
            status TEXT DEFAULT 'pending'
                CHECK(status IN ('pending', 'in_progress', 'completed', 'failed', 'skipped')),
            created_at TEXT DEFAULT (datetime('now'))
        );

        CREATE INDEX IF NOT EXISTS idx_threads_status ON threads(status);
        CREATE INDEX IF NOT EXISTS idx_plan_steps_plan ON plan_steps(plan_id, step_order);
        """
    )


def migration_001_workers(conn: sqlite3.Connection):
    """Create the workers table.

    container_id stays empty until the runtime returns one; thread_id is
    NULL for drone workers.
    """
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS workers (
            id TEXT PRIMARY KEY,
            container_id TEXT NOT NULL DEFAULT '',
            thread_id TEXT REFERENCES threads(id),
            status TEXT NOT NULL DEFAULT 'running'
                CHECK(status IN ('running', 'completed', 'failed', 'killed')),
            last_heartbeat TEXT DEFAULT (datetime('now')),
            created_at TEXT DEFAULT (datetime('now')),
            auth_mode TEXT CHECK(auth_mode IN ('env', 'config', 'oauth')),
            iteration INTEGER DEFAULT 0,
            max_iterations INTEGER DEFAULT 50
        );

        CREATE INDEX IF NOT EXISTS idx_workers_status ON workers(status);
        CREATE INDEX IF NOT EXISTS idx_workers_thread ON workers(thread_id);
        """
    )


def migration_002_worker_events(conn: sqlite3.Connection):
    """Create the structured worker event log."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS worker_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            worker_id TEXT NOT NULL,
            iteration INTEGER NOT NULL,
            timestamp TEXT NOT NULL DEFAULT (datetime('now')),
            event_type TEXT NOT NULL
                CHECK(event_type IN ('tool_call', 'tool_result', 'text', 'error', 'system')),
            tool_name TEXT,
            tool_input TEXT,
            tool_output_preview TEXT,
            file_path TEXT,
            duration_ms INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_worker_events_worker ON worker_events(worker_id, iteration);
        CREATE INDEX IF NOT EXISTS idx_worker_events_file
            ON worker_events(file_path) WHERE file_path IS NOT NULL;
        CREATE INDEX IF NOT EXISTS idx_worker_events_tool
            ON worker_events(tool_name) WHERE tool_name IS NOT NULL;
        """
    )


def migration_003_drones(conn: sqlite3.Connection):
    """Create drones and drone_sessions."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS drones (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            prompt TEXT NOT NULL,
            max_iterations INTEGER DEFAULT 100,
            timeout_minutes INTEGER DEFAULT 60,
            cooldown_seconds INTEGER DEFAULT 60,
            status TEXT DEFAULT 'active' CHECK(status IN ('active', 'paused', 'archived')),
            created_at TEXT DEFAULT (datetime('now')),
            updated_at TEXT DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS drone_sessions (
            id TEXT PRIMARY KEY,
            drone_id TEXT NOT NULL REFERENCES drones(id) ON DELETE CASCADE,
            worker_id TEXT REFERENCES workers(id),
            git_branch TEXT,
            status TEXT DEFAULT 'running'
                CHECK(status IN ('running', 'completed', 'stopped', 'failed')),
            iteration INTEGER DEFAULT 0,
            started_at TEXT DEFAULT (datetime('now')),
            ended_at TEXT,
            stop_reason TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_drones_status ON drones(status);
        CREATE INDEX IF NOT EXISTS idx_drone_sessions_drone
            ON drone_sessions(drone_id, started_at DESC);
        CREATE INDEX IF NOT EXISTS idx_drone_sessions_status ON drone_sessions(status);
        """
    )


MIGRATIONS: list[tuple[int, str, Callable]] = [
    (0, "Create thread and plan tables", migration_000_thread_tables),
    (1, "Add workers table", migration_001_workers),
    (2, "Add worker event log", migration_002_worker_events),
    (3, "Add drones and drone sessions", migration_003_drones),
]


def run_migrations(conn: sqlite3.Connection):
    """Run all pending migrations on an open connection."""
    current_version = get_schema_version(conn)

    for version, description, migration_func in MIGRATIONS:
        if version > current_version:
            logger.info("Running migration %d: %s", version, description)
            migration_func(conn)
            set_schema_version(conn, version)
