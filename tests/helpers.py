"""Test helpers: thread/plan seeding and an in-memory container runtime."""

import uuid
from typing import Optional

from blackboard.database.connection import Database
from blackboard.exceptions import ContainerNotFoundError, RuntimeCommandError
from blackboard.models.threads import Thread
from blackboard.runtime.docker import ContainerInfo, ContainerOptions, DockerRuntime


def add_thread(db: Database, name: str, status: str = "active", pending: int = 1) -> Thread:
    """Insert a thread whose current plan has ``pending`` pending steps."""
    thread_id = uuid.uuid4().hex
    plan_id = uuid.uuid4().hex
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO threads (id, name, status) VALUES (?, ?, ?)",
            (thread_id, name, status),
        )
        conn.execute(
            "INSERT INTO plans (id, plan_markdown, thread_id) VALUES (?, ?, ?)",
            (plan_id, f"# {name}", thread_id),
        )
        conn.execute("UPDATE threads SET current_plan_id = ? WHERE id = ?", (plan_id, thread_id))
        for order in range(pending):
            conn.execute(
                "INSERT INTO plan_steps (id, plan_id, step_order, description) VALUES (?, ?, ?, ?)",
                (uuid.uuid4().hex, plan_id, order, f"step {order}"),
            )
    return Thread(id=thread_id, name=name, status=status, current_plan_id=plan_id)


def complete_one_step(db: Database, thread: Thread) -> None:
    """Mark the first pending step of the thread's plan completed."""
    db.write(
        """
        UPDATE plan_steps SET status = 'completed'
        WHERE id = (
            SELECT ps.id FROM plan_steps ps
            JOIN threads t ON t.current_plan_id = ps.plan_id
            WHERE t.id = ? AND ps.status = 'pending'
            ORDER BY ps.step_order LIMIT 1
        )
        """,
        (thread.id,),
    )


class FakeRuntime:
    """In-memory stand-in for DockerRuntime.

    Reconciliation and orphan cleanup reuse the real implementations on
    top of the fake primitives.
    """

    reconcile = DockerRuntime.reconcile
    cleanup_orphans = DockerRuntime.cleanup_orphans

    def __init__(self, available: bool = True, image_present: bool = True):
        self.available = available
        self.image_present = image_present
        self.containers: dict[str, dict] = {}
        self.spawned: list[ContainerOptions] = []
        self.killed: list[str] = []
        self.removed: list[str] = []
        self.builds: list[tuple] = []
        # thread/drone name -> failures left (-1 = always fail)
        self.spawn_failures: dict[str, int] = {}
        self.kill_fails = False
        self.running_at_spawn: list[int] = []

    def is_available(self) -> bool:
        return self.available

    def image_exists(self, name: str) -> bool:
        return self.image_present

    def build_image(self, tag, context_path, dockerfile_path=None) -> None:
        self.builds.append((tag, context_path, dockerfile_path))
        self.image_present = True

    resolve_build_file = staticmethod(DockerRuntime.resolve_build_file)

    def spawn(self, options: ContainerOptions) -> str:
        owner = options.thread_name or options.drone_name
        self.running_at_spawn.append(self.running_count())
        left = self.spawn_failures.get(owner, 0)
        if left != 0:
            if left > 0:
                self.spawn_failures[owner] = left - 1
            raise RuntimeCommandError("docker run", 125, f"cannot start {owner}")
        container_id = uuid.uuid4().hex
        self.containers[container_id] = {
            "worker_id": options.worker_id,
            "owner": owner,
            "running": True,
            "labels": {"blackboard.managed": "true", "blackboard.worker-id": options.worker_id},
        }
        self.spawned.append(options)
        return container_id

    def running_count(self) -> int:
        return sum(1 for c in self.containers.values() if c["running"])

    def container_for(self, worker_id: str) -> Optional[str]:
        for cid, c in self.containers.items():
            if c["worker_id"] == worker_id:
                return cid
        return None

    def exit(self, container_id: str) -> None:
        self.containers[container_id]["running"] = False

    def kill(self, container_id: str) -> None:
        self.killed.append(container_id)
        if self.kill_fails or container_id not in self.containers:
            raise ContainerNotFoundError("docker kill", 1, "No such container")
        self.containers[container_id]["running"] = False

    def stop(self, container_id: str, timeout_seconds: int = 30) -> None:
        self.kill(container_id)

    def remove(self, container_id: str) -> None:
        if container_id not in self.containers:
            raise ContainerNotFoundError("docker rm", 1, "No such container")
        del self.containers[container_id]
        self.removed.append(container_id)

    def list(self, label_filter=None) -> list[ContainerInfo]:
        return [
            ContainerInfo(id=cid, name=cid, status="", labels=dict(c["labels"]))
            for cid, c in self.containers.items()
        ]

    def is_running(self, container_id: str) -> Optional[bool]:
        container = self.containers.get(container_id)
        return None if container is None else container["running"]
