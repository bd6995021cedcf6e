"""Shared pytest fixtures for blackboard tests."""

from pathlib import Path

import pytest

from blackboard.database.connection import Database
from blackboard.models.drones import DroneStore
from blackboard.models.threads import ThreadStore
from blackboard.models.workers import WorkerRegistry
from helpers import FakeRuntime


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep tests away from the developer's real credentials and project."""
    for name in (
        "ANTHROPIC_API_KEY",
        "CLAUDE_CODE_OAUTH_TOKEN",
        "BLACKBOARD_DB",
        "BLACKBOARD_CONTAINER_RUNTIME",
        "CLAUDE_PROJECT_DIR",
        "CLAUDE_PLUGIN_ROOT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / ".claude" / "blackboard.db"


@pytest.fixture
def db(db_path):
    """An open database with the full schema."""
    database = Database(db_path).open()
    yield database
    database.close()


@pytest.fixture
def registry(db) -> WorkerRegistry:
    return WorkerRegistry(db)


@pytest.fixture
def threads(db) -> ThreadStore:
    return ThreadStore(db)


@pytest.fixture
def drones(db) -> DroneStore:
    return DroneStore(db)


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()
