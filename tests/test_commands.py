"""Tests for the blackboard CLI commands."""

import json
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from blackboard.main import app
from blackboard.models.workers import Worker
from blackboard.services.auth import AuthResolver
from blackboard.services.farm import FarmResult, FarmStats
from helpers import FakeRuntime, add_thread

runner = CliRunner()


@pytest.fixture(autouse=True)
def _home(tmp_path, monkeypatch):
    """Keep the CLI log file inside the test directory."""
    monkeypatch.setenv("HOME", str(tmp_path))


def _invoke(db_path, *args):
    return runner.invoke(app, ["--db", str(db_path), "-q", *args])


def _no_oauth_resolver():
    return AuthResolver(oauth_provider=lambda: None)


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class TestRoot:
    def test_help(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "farm" in result.stdout
        assert "drone" in result.stdout

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "blackboard version" in result.stdout

    def test_verbose_and_quiet_conflict(self, db_path):
        result = runner.invoke(app, ["-v", "-q", "workers"])
        assert result.exit_code == 1

    def test_database_found_from_project_dir(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLAUDE_PROJECT_DIR", str(tmp_path))
        result = runner.invoke(app, ["-q", "workers", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []
        assert (tmp_path / ".claude" / "blackboard.db").exists()


# ---------------------------------------------------------------------------
# workers / drain / kill
# ---------------------------------------------------------------------------


class TestWorkersCommand:
    def test_lists_running_workers_as_json(self, db_path, db, registry):
        thread = add_thread(db, "alpha")
        registry.insert(Worker(id="a" * 32, container_id="c1", thread_id=thread.id, auth_mode="env"))
        registry.insert(Worker(id="b" * 32, auth_mode="env", status="completed"))

        result = _invoke(db_path, "workers", "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [w["id"] for w in data] == ["a" * 32]
        assert data[0]["owner"] == "alpha"

    def test_all_includes_finished(self, db_path, registry):
        registry.insert(Worker(id="a" * 32, auth_mode="env"))
        registry.insert(Worker(id="b" * 32, auth_mode="env", status="failed"))

        result = _invoke(db_path, "workers", "--all", "--json")

        assert {w["id"] for w in json.loads(result.stdout)} == {"a" * 32, "b" * 32}

    def test_table_output(self, db_path, registry):
        registry.insert(Worker(id="a" * 32, auth_mode="env"))
        result = _invoke(db_path, "workers")
        assert result.exit_code == 0
        assert "aaaaaaaa" in result.stdout

    def test_empty(self, db_path, db):
        result = _invoke(db_path, "workers")
        assert "No running workers" in result.stdout

    def test_prune(self, db_path, db):
        result = _invoke(db_path, "workers", "--prune", "--json")
        assert json.loads(result.stdout) == {"pruned": 0}


class TestDrainCommand:
    def test_drain_json(self, db_path, registry, fake_runtime):
        registry.insert(Worker(id="a" * 32, container_id="c1", auth_mode="env"))
        fake_runtime.containers["c1"] = {"worker_id": "a" * 32, "owner": None, "running": True, "labels": {}}

        with patch("blackboard.commands.workers.DockerRuntime", return_value=fake_runtime):
            result = _invoke(db_path, "drain", "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["drained"] == 1
        assert data["failed"] == 0
        assert registry.get("a" * 32).status == "killed"


class TestKillCommand:
    def test_kill_by_prefix(self, db_path, registry):
        registry.insert(Worker(id="a" * 32, container_id="c1", auth_mode="env"))
        runtime = MagicMock()

        with patch("blackboard.commands.workers.DockerRuntime", return_value=runtime):
            result = _invoke(db_path, "kill", "aaaa", "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["worker_id"] == "a" * 32
        assert data["status"] == "killed"
        runtime.kill.assert_called_once_with("c1")

    def test_kill_unknown(self, db_path, db):
        with patch("blackboard.commands.workers.DockerRuntime", return_value=MagicMock()):
            result = _invoke(db_path, "kill", "nobody")
        assert result.exit_code == 1
        assert "No running worker" in result.stdout


# ---------------------------------------------------------------------------
# In-container hooks
# ---------------------------------------------------------------------------


class TestHooks:
    def test_iteration_records_progress(self, db_path, registry):
        registry.insert(Worker(id="a" * 32, auth_mode="env"))

        result = _invoke(db_path, "worker", "iteration", "a" * 32, "4")

        assert result.exit_code == 0
        assert registry.get("a" * 32).iteration == 4

    def test_iteration_mirrors_onto_drone_session(self, db_path, registry, drones):
        drone = drones.create("dep-updater", "Update deps")
        registry.insert(Worker(id="d" * 32, auth_mode="env"))
        session = drones.create_session(drone, "d" * 32, "drones/dep-updater/dddddddd")

        result = _invoke(db_path, "worker", "iteration", "d" * 32, "6")

        assert result.exit_code == 0
        assert drones.get_session(session.id).iteration == 6

    def test_heartbeat(self, db_path, registry):
        registry.insert(Worker(id="a" * 32, auth_mode="env"))
        assert _invoke(db_path, "worker", "heartbeat", "a" * 32).exit_code == 0

    def test_finish(self, db_path, registry):
        registry.insert(Worker(id="a" * 32, auth_mode="env"))

        result = _invoke(db_path, "worker", "finish", "a" * 32, "--status", "failed")

        assert result.exit_code == 0
        assert registry.get("a" * 32).status == "failed"

    def test_finish_twice_fails(self, db_path, registry):
        registry.insert(Worker(id="a" * 32, auth_mode="env"))
        _invoke(db_path, "worker", "finish", "a" * 32)

        result = _invoke(db_path, "worker", "finish", "a" * 32, "--status", "failed")

        assert result.exit_code == 1
        assert registry.get("a" * 32).status == "completed"

    def test_finish_rejects_other_statuses(self, db_path, registry):
        registry.insert(Worker(id="a" * 32, auth_mode="env"))
        result = _invoke(db_path, "worker", "finish", "a" * 32, "--status", "killed")
        assert result.exit_code == 1
        assert registry.get("a" * 32).is_running


# ---------------------------------------------------------------------------
# farm
# ---------------------------------------------------------------------------


class TestFarmCommand:
    def test_rejects_unknown_auth_mode(self, db_path, db):
        result = _invoke(db_path, "farm", "--auth", "magic")
        assert result.exit_code == 1

    def test_passes_options_to_orchestrator(self, db_path, db, tmp_path):
        orchestrator = MagicMock()
        orchestrator.run.return_value = FarmResult(completed=2, failed=1, total=3)

        with patch("blackboard.commands.farm.FleetOrchestrator", return_value=orchestrator) as cls, \
                patch("blackboard.commands.farm.DockerRuntime"):
            result = _invoke(
                db_path, "farm", "-t", "alpha, beta", "-c", "2", "--api-key", "sk-x", "--json"
            )

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"completed": 2, "failed": 1, "total_threads": 3}
        config = cls.call_args.kwargs["config"]
        assert config.threads == ["alpha", "beta"]
        assert config.concurrency == 2
        assert config.api_key == "sk-x"
        assert cls.call_args.kwargs["db_path"] == db_path

    def test_progress_respects_quiet(self, db_path, db):
        def make_orchestrator(**kwargs):
            orchestrator = MagicMock()

            def run():
                kwargs["on_progress"](FarmStats(active=1, remaining=2))
                return FarmResult(completed=0, failed=0, total=0)

            orchestrator.run.side_effect = run
            return orchestrator

        with patch("blackboard.commands.farm.FleetOrchestrator", side_effect=make_orchestrator), \
                patch("blackboard.commands.farm.DockerRuntime"):
            quiet = _invoke(db_path, "farm", "--api-key", "sk-x")
            loud = runner.invoke(app, ["--db", str(db_path), "farm", "--api-key", "sk-x"])

        assert quiet.exit_code == 0
        assert loud.exit_code == 0
        assert "Status:" not in quiet.stdout
        assert "Status:" in loud.stdout

    def test_end_to_end_without_pending_work(self, db_path, db):
        with patch("blackboard.commands.farm.DockerRuntime", return_value=FakeRuntime()):
            result = _invoke(db_path, "farm", "--api-key", "sk-x", "--json")

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"completed": 0, "failed": 0, "total_threads": 0}

    def test_runtime_unavailable_exits_nonzero(self, db_path, db):
        with patch(
            "blackboard.commands.farm.DockerRuntime", return_value=FakeRuntime(available=False)
        ):
            result = _invoke(db_path, "farm", "--api-key", "sk-x")

        assert result.exit_code == 1
        assert "Docker is not available" in result.stdout

# ---------------------------------------------------------------------------
# spawn
# ---------------------------------------------------------------------------


class TestSpawnCommand:
    def test_spawn_json(self, db_path, db, registry):
        thread = add_thread(db, "alpha")
        runtime = FakeRuntime()

        with patch("blackboard.commands.farm.DockerRuntime", return_value=runtime):
            result = _invoke(db_path, "spawn", "alpha", "--api-key", "sk-x", "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["thread_name"] == "alpha"
        assert data["thread_id"] == thread.id
        assert data["container_id"] == runtime.container_for(data["worker_id"])
        assert registry.get(data["worker_id"]).is_running

    def test_spawn_unknown_thread(self, db_path, db):
        with patch("blackboard.commands.farm.DockerRuntime", return_value=FakeRuntime()):
            result = _invoke(db_path, "spawn", "ghost", "--api-key", "sk-x")
        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_spawn_archived_thread(self, db_path, db, registry):
        add_thread(db, "old", status="archived")
        with patch("blackboard.commands.farm.DockerRuntime", return_value=FakeRuntime()):
            result = _invoke(db_path, "spawn", "old", "--api-key", "sk-x")
        assert result.exit_code == 1
        assert registry.list_all() == []



# ---------------------------------------------------------------------------
# drone
# ---------------------------------------------------------------------------


class TestDroneCommands:
    def test_new_and_list(self, db_path, db):
        result = _invoke(db_path, "drone", "new", "dep-updater", "-p", "Update deps")
        assert result.exit_code == 0

        result = _invoke(db_path, "drone", "list", "--json")
        (drone,) = json.loads(result.stdout)
        assert drone["name"] == "dep-updater"
        assert drone["running_session"] is None

    def test_new_from_file(self, db_path, db, drones, tmp_path):
        prompt = tmp_path / "prompt.md"
        prompt.write_text("Review open PRs")

        result = _invoke(db_path, "drone", "new", "reviewer", "--file", str(prompt))

        assert result.exit_code == 0
        assert drones.require("reviewer").prompt == "Review open PRs"

    def test_new_requires_prompt(self, db_path, db):
        assert _invoke(db_path, "drone", "new", "reviewer").exit_code == 1

    def test_new_rejects_bad_name(self, db_path, db):
        result = _invoke(db_path, "drone", "new", "Bad_Name", "-p", "x")
        assert result.exit_code == 1

    def test_start_stop_cycle(self, db_path, drones, registry, fake_runtime):
        drones.create("dep-updater", "Update deps")

        with patch("blackboard.commands.drone.DockerRuntime", return_value=fake_runtime), \
                patch("blackboard.commands.drone.AuthResolver", _no_oauth_resolver):
            started = _invoke(db_path, "drone", "start", "dep-updater", "--api-key", "sk-x", "--json")
            again = _invoke(db_path, "drone", "start", "dep-updater", "--api-key", "sk-x")
            stopped = _invoke(db_path, "drone", "stop", "dep-updater", "--json")

        assert started.exit_code == 0
        data = json.loads(started.stdout)
        assert data["git_branch"].startswith("drones/dep-updater/")
        assert again.exit_code == 1
        assert "already running" in again.stdout
        assert stopped.exit_code == 0
        assert json.loads(stopped.stdout)["session_id"] == data["session_id"]
        assert registry.get(data["worker_id"]).status == "killed"

    def test_stop_not_running(self, db_path, drones):
        drones.create("dep-updater", "Update deps")
        with patch("blackboard.commands.drone.DockerRuntime", return_value=MagicMock()):
            result = _invoke(db_path, "drone", "stop", "dep-updater")
        assert result.exit_code == 1
        assert "not running" in result.stdout

    def test_logs_json(self, db_path, db, drones, registry):
        drone = drones.create("dep-updater", "Update deps")
        registry.insert(Worker(id="w" * 32, auth_mode="env"))
        drones.create_session(drone, "w" * 32, "drones/dep-updater/wwwwwwww")
        for tool in ("Read", "Edit", "Edit"):
            db.write(
                "INSERT INTO worker_events (worker_id, iteration, event_type, tool_name) "
                "VALUES (?, 1, 'tool_call', ?)",
                ("w" * 32, tool),
            )

        result = _invoke(db_path, "drone", "logs", "dep-updater", "--tool", "Edit", "--json")

        assert result.exit_code == 0
        assert [e["tool_name"] for e in json.loads(result.stdout)] == ["Edit", "Edit"]

    def test_logs_unknown_drone(self, db_path, db):
        result = _invoke(db_path, "drone", "logs", "ghost")
        assert result.exit_code == 1
