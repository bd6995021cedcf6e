"""Drone session launch and stop.

A drone is the single-unit variant of the farm: one container, one
session, one worker record, on its own git branch.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from ..config.constants import (
    DEFAULT_DRONE_MEMORY,
    DEFAULT_WORKER_IMAGE,
    DRONE_BRANCH_PREFIX,
    ENV_COOLDOWN_SECONDS,
    ENV_DRONE_PROMPT,
    LOG_FOLLOW_INTERVAL_SECONDS,
)
from ..exceptions import (
    BlackboardError,
    ContainerRuntimeError,
    DroneAlreadyRunningError,
    DroneNotRunningError,
    RuntimeUnavailableError,
)
from ..models.drones import Drone, DroneStore, WorkerEvent
from ..models.workers import Worker, WorkerRegistry
from ..runtime.docker import ContainerOptions, DockerRuntime
from ..utils.ids import new_id, short_id
from .auth import AuthResolver
from .images import ensure_image

logger = logging.getLogger(__name__)


@dataclass
class LaunchOptions:
    """Per-launch overrides; unset values fall back to the drone's settings."""
    api_key: Optional[str] = None
    image: str = DEFAULT_WORKER_IMAGE
    memory: str = DEFAULT_DRONE_MEMORY
    repo_dir: Optional[Path] = None
    build: bool = False
    max_iterations: Optional[int] = None
    cooldown_seconds: Optional[int] = None
    project_root: Path = field(default_factory=Path.cwd)
    plugin_root: Optional[Path] = None


@dataclass
class LaunchResult:
    session_id: str
    worker_id: str
    container_id: str
    git_branch: str


@dataclass
class StopResult:
    session_id: str
    worker_id: Optional[str]


def drone_branch(drone_name: str, session_id: str) -> str:
    return f"{DRONE_BRANCH_PREFIX}/{drone_name}/{short_id(session_id)}"


class DroneLauncher:
    """Starts and stops drone sessions."""

    def __init__(
        self,
        drones: DroneStore,
        registry: WorkerRegistry,
        runtime: DockerRuntime,
        auth: AuthResolver,
        db_path: Path,
    ):
        self.drones = drones
        self.registry = registry
        self.runtime = runtime
        self.auth = auth
        self.db_path = Path(db_path)

    def launch(self, drone_ref: str, options: Optional[LaunchOptions] = None) -> LaunchResult:
        """Start a new session for the drone.

        The worker record is written before the session (the session
        references it), and both exist before the container is spawned. A
        failed spawn leaves both records failed, never running.

        Raises:
            DroneNotFoundError, DroneAlreadyRunningError, RuntimeUnavailableError,
            BuildFileNotFoundError, RuntimeCommandError, AuthenticationError
        """
        options = options or LaunchOptions()
        drone = self.drones.require(drone_ref)

        current = self.drones.current_session(drone)
        if current is not None:
            raise DroneAlreadyRunningError(drone.name, current.id)

        if not self.runtime.is_available():
            raise RuntimeUnavailableError()

        project_root = options.repo_dir or options.project_root
        ensure_image(
            self.runtime,
            options.image,
            project_root,
            options.plugin_root or project_root,
            force_build=options.build,
        )

        credential = self.auth.resolve(None, options.api_key)
        logger.info(
            "Using %s authentication for drone %s",
            "OAuth" if credential.mode == "oauth" else "API key",
            drone.name,
        )

        session_id = new_id()
        worker_id = new_id()
        git_branch = drone_branch(drone.name, session_id)
        max_iterations = options.max_iterations or drone.max_iterations
        cooldown = (
            options.cooldown_seconds
            if options.cooldown_seconds is not None
            else drone.cooldown_seconds
        )

        self.registry.insert(
            Worker(
                id=worker_id,
                thread_id=None,
                auth_mode=credential.mode,
                max_iterations=max_iterations,
            )
        )
        try:
            self.drones.create_session(drone, worker_id, git_branch, session_id=session_id)
        except BlackboardError:
            # Includes losing a race with another launcher
            self.registry.update_status(worker_id, "failed")
            raise

        container_options = ContainerOptions(
            image=options.image,
            worker_id=worker_id,
            db_dir=self.db_path.parent,
            auth_mode=credential.mode,
            repo_dir=options.repo_dir or options.project_root,
            memory=options.memory,
            max_iterations=max_iterations,
            drone_name=drone.name,
            session_id=session_id,
            api_key=credential.api_key,
            oauth_token=credential.oauth_token,
            config_dir=credential.config_dir,
            env={ENV_DRONE_PROMPT: drone.prompt, ENV_COOLDOWN_SECONDS: str(cooldown)},
        )
        try:
            container_id = self.runtime.spawn(container_options)
        except ContainerRuntimeError:
            self.drones.update_session_status(session_id, "failed", "container_spawn_failed")
            self.registry.update_status(worker_id, "failed")
            raise

        self.registry.update_container_id(worker_id, container_id)
        logger.info("Drone %s started (session %s)", drone.name, short_id(session_id))
        return LaunchResult(
            session_id=session_id,
            worker_id=worker_id,
            container_id=container_id,
            git_branch=git_branch,
        )

    def stop(self, drone_ref: str) -> StopResult:
        """Stop the drone's running session.

        The worker is marked killed whether or not the kill call succeeds;
        a container that is already gone is not an error here.

        Raises:
            DroneNotFoundError, DroneNotRunningError
        """
        drone = self.drones.require(drone_ref)
        session = self.drones.current_session(drone)
        if session is None:
            raise DroneNotRunningError(drone.name)

        self.drones.update_session_status(session.id, "stopped", "manual")

        if session.worker_id:
            worker = self.registry.get(session.worker_id)
            if worker is not None and worker.is_spawned:
                try:
                    self.runtime.kill(worker.container_id)
                except ContainerRuntimeError as e:
                    logger.info("Kill for drone %s ignored: %s", drone.name, e)
            self.registry.update_status(session.worker_id, "killed")

        logger.info("Drone %s stopped (session %s)", drone.name, short_id(session.id))
        return StopResult(session_id=session.id, worker_id=session.worker_id)


def follow_events(
    drones: DroneStore,
    drone: Drone,
    on_event: Callable[[WorkerEvent], None],
    tool: Optional[str] = None,
    file_path: Optional[str] = None,
    after_id: int = 0,
    interval: float = LOG_FOLLOW_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    should_continue: Callable[[], bool] = lambda: True,
) -> int:
    """Poll for new worker events of every session of ``drone``.

    Returns:
        The id of the last event seen.
    """
    last_id = after_id
    while should_continue():
        events = drones.list_events(
            drones.session_worker_ids(drone), tool=tool, file_path=file_path, after_id=last_id
        )
        for event in events:
            on_event(event)
            last_id = event.id
        sleep(interval)
    return last_id
