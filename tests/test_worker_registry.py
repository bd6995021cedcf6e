"""Tests for blackboard.models.workers and the database layer beneath it."""

from datetime import timedelta

import pytest

from blackboard.database.connection import Database, utcnow
from blackboard.exceptions import DatabaseBusyError, DatabaseQueryError
from blackboard.models.workers import Worker
from helpers import add_thread

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_worker(worker_id="a" * 32, thread_id=None, status="running", heartbeat_age=0, **kwargs):
    return Worker(
        id=worker_id,
        thread_id=thread_id,
        status=status,
        auth_mode="env",
        last_heartbeat=utcnow() - timedelta(seconds=heartbeat_age),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestInsertAndGet:
    def test_insert_then_get(self, registry, db):
        thread = add_thread(db, "alpha")
        registry.insert(_make_worker(thread_id=thread.id, max_iterations=20))

        worker = registry.get("a" * 32)
        assert worker is not None
        assert worker.status == "running"
        assert worker.container_id == ""
        assert worker.thread_id == thread.id
        assert worker.owner_name == "alpha"
        assert worker.max_iterations == 20
        assert worker.short_id == "aaaaaaaa"

    def test_get_missing_returns_none(self, registry):
        assert registry.get("nope") is None

    def test_duplicate_id_is_query_error(self, registry):
        registry.insert(_make_worker())
        with pytest.raises(DatabaseQueryError):
            registry.insert(_make_worker())

    def test_update_container_id(self, registry):
        registry.insert(_make_worker())
        assert registry.update_container_id("a" * 32, "c0ffee")
        worker = registry.get("a" * 32)
        assert worker.container_id == "c0ffee"
        assert worker.is_spawned

    def test_update_iteration(self, registry):
        registry.insert(_make_worker())
        assert not registry.get("a" * 32).is_spawned
        assert registry.update_iteration("a" * 32, 3)
        assert registry.get("a" * 32).iteration == 3
        assert registry.update_iteration("missing", 3) is False


class TestStatusMonotonicity:
    def test_running_to_completed(self, registry):
        registry.insert(_make_worker())
        assert registry.update_status("a" * 32, "completed") is True
        assert registry.get("a" * 32).status == "completed"

    def test_terminal_record_never_changes(self, registry):
        registry.insert(_make_worker())
        registry.update_status("a" * 32, "failed")

        assert registry.update_status("a" * 32, "completed") is False
        assert registry.update_status("a" * 32, "killed") is False
        assert registry.get("a" * 32).status == "failed"

    def test_unknown_worker_reports_false(self, registry):
        assert registry.update_status("missing", "failed") is False

    def test_invalid_status_rejected(self, registry):
        registry.insert(_make_worker())
        with pytest.raises(DatabaseQueryError):
            registry.update_status("a" * 32, "exploded")

    def test_heartbeat_ignored_after_terminal(self, registry):
        registry.insert(_make_worker())
        registry.update_status("a" * 32, "killed")
        assert registry.update_heartbeat("a" * 32) is False

    def test_record_progress_updates_both(self, registry):
        registry.insert(_make_worker(heartbeat_age=120))
        assert registry.record_progress("a" * 32, 7)

        worker = registry.get("a" * 32)
        assert worker.iteration == 7
        assert worker.heartbeat_age < 60


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestQueries:
    def test_list_stale_uses_timeout(self, registry):
        registry.insert(_make_worker("1" * 32, heartbeat_age=45))
        registry.insert(_make_worker("2" * 32, heartbeat_age=5))
        registry.insert(_make_worker("3" * 32, heartbeat_age=90, status="completed"))

        stale = registry.list_stale(30)
        assert [w.id for w in stale] == ["1" * 32]

    def test_list_active_and_active_ids(self, registry):
        registry.insert(_make_worker("1" * 32))
        registry.insert(_make_worker("2" * 32))
        registry.update_status("2" * 32, "completed")

        assert [w.id for w in registry.list_active()] == ["1" * 32]
        assert registry.active_ids() == {"1" * 32}

    def test_list_active_shows_drone_name_for_drone_workers(self, registry, drones):
        drone = drones.create("dep-updater", "update deps")
        registry.insert(_make_worker("d" * 32))
        drones.create_session(drone, "d" * 32, "drones/dep-updater/12345678")

        (worker,) = registry.list_active()
        assert worker.thread_id is None
        assert worker.owner_name == "dep-updater"

    def test_list_for_owner_newest_first(self, registry, db):
        thread = add_thread(db, "alpha")
        older = _make_worker("1" * 32, thread_id=thread.id)
        older.created_at = utcnow() - timedelta(minutes=5)
        registry.insert(older)
        registry.insert(_make_worker("2" * 32, thread_id=thread.id))

        assert [w.id for w in registry.list_for_owner(thread.id)] == ["2" * 32, "1" * 32]

    def test_find_by_prefix(self, registry):
        registry.insert(_make_worker("abc1" + "0" * 28))
        registry.insert(_make_worker("abc2" + "0" * 28))

        assert len(registry.find_by_prefix("abc")) == 2
        assert len(registry.find_by_prefix("abc1")) == 1
        assert registry.find_by_prefix("zzz") == []

    def test_find_by_prefix_treats_wildcards_literally(self, registry):
        registry.insert(_make_worker("abc1" + "0" * 28))
        assert registry.find_by_prefix("%") == []
        assert registry.find_by_prefix("_bc") == []


# ---------------------------------------------------------------------------
# Housekeeping
# ---------------------------------------------------------------------------


class TestPurgeOld:
    def test_purges_only_old_terminal_records(self, registry, db):
        old = _make_worker("1" * 32, status="completed")
        old.created_at = utcnow() - timedelta(days=2)
        registry.insert(old)

        old_running = _make_worker("2" * 32)
        old_running.created_at = utcnow() - timedelta(days=2)
        registry.insert(old_running)

        registry.insert(_make_worker("3" * 32, status="failed"))

        assert registry.purge_old() == 1
        assert registry.get("1" * 32) is None
        assert registry.get("2" * 32) is not None
        assert registry.get("3" * 32) is not None

    def test_keeps_workers_referenced_by_drone_sessions(self, registry, drones):
        drone = drones.create("nightly", "run nightly checks")
        worker = _make_worker("d" * 32)
        worker.created_at = utcnow() - timedelta(days=3)
        registry.insert(worker)
        session = drones.create_session(drone, worker.id, "drones/nightly/abcd1234")
        drones.update_session_status(session.id, "completed")
        registry.update_status(worker.id, "completed")

        assert registry.purge_old() == 0
        assert registry.get(worker.id) is not None


# ---------------------------------------------------------------------------
# Lock contention
# ---------------------------------------------------------------------------


class TestBusyDatabase:
    def test_write_while_locked_raises_busy(self, db_path, db):
        contender = Database(db_path, busy_timeout=0.05).open()
        try:
            db.conn.execute("BEGIN IMMEDIATE")
            with pytest.raises(DatabaseBusyError) as exc_info:
                contender.write("UPDATE workers SET iteration = 1")
            assert exc_info.value.retryable is True
        finally:
            db.conn.execute("ROLLBACK")
            contender.close()
