"""
Docker CLI wrapper for blackboard workers.

A thin, stateless layer over ``docker`` (or ``podman``): every method is
one CLI invocation through ``subprocess.run``. Non-zero exits become
``RuntimeCommandError`` carrying the captured output; deciding whether a
failure matters is left to the caller.
"""

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from ..config.constants import (
    CONTAINER_CLAUDE_DIR,
    CONTAINER_DB_DIR,
    CONTAINER_REPO_DIR,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_STOP_TIMEOUT_SECONDS,
    DEFAULT_WORKER_MEMORY,
    DRONE_CONTAINER_PREFIX,
    ENV_API_KEY,
    ENV_DRONE_NAME,
    ENV_MAX_ITERATIONS,
    ENV_OAUTH_TOKEN,
    ENV_SESSION_ID,
    ENV_THREAD_NAME,
    ENV_WORKER_ID,
    LABEL_DRONE_NAME,
    LABEL_MANAGED,
    LABEL_SESSION_ID,
    LABEL_THREAD,
    LABEL_TYPE,
    LABEL_WORKER_ID,
    PLUGIN_DOCKERFILE,
    PROJECT_DOCKERFILE,
    WORKER_CONTAINER_PREFIX,
)
from ..config.settings import get_container_runtime
from ..exceptions import (
    ContainerNotFoundError,
    RuntimeCommandError,
    RuntimeUnavailableError,
)
from ..models.workers import Worker

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("no such container", "no such object", "not found")


@dataclass
class ContainerOptions:
    """Everything needed to start one worker container.

    Exactly one of ``api_key``, ``oauth_token`` or ``config_dir`` is used,
    selected by ``auth_mode``.
    """
    image: str
    worker_id: str
    db_dir: Path
    auth_mode: str  # 'env', 'oauth', 'config'
    repo_dir: Optional[Path] = None
    memory: str = DEFAULT_WORKER_MEMORY
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    thread_name: Optional[str] = None
    drone_name: Optional[str] = None
    session_id: Optional[str] = None
    api_key: Optional[str] = None
    oauth_token: Optional[str] = None
    config_dir: Optional[Path] = None
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def is_drone(self) -> bool:
        return self.drone_name is not None

    @property
    def container_name(self) -> str:
        if self.is_drone:
            return f"{DRONE_CONTAINER_PREFIX}{self.session_id or self.worker_id}"
        return f"{WORKER_CONTAINER_PREFIX}{self.worker_id}"


@dataclass
class ContainerInfo:
    """A container as reported by ``docker ps``."""
    id: str
    name: str
    status: str
    state: str = ""
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerState:
    """Subset of ``docker inspect`` state."""
    running: bool
    exit_code: Optional[int]
    status: str


@dataclass
class ReconcileResult:
    checked: int = 0
    updated: int = 0
    removed: int = 0


def parse_labels(raw: str) -> dict[str, str]:
    """Parse docker's ``k=v,k=v`` label serialization."""
    labels: dict[str, str] = {}
    if not raw:
        return labels
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if sep and key:
            labels[key.strip()] = value
    return labels


class DockerRuntime:
    """Typed wrapper over the container runtime CLI."""

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary or get_container_runtime()

    def _run(
        self,
        args: list[str],
        env: Optional[dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        """Run a runtime command and return the result."""
        cmd = [self.binary, *args]
        logger.debug("Running: %s %s", self.binary, args[0] if args else "")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=False, env=env)
        except FileNotFoundError as e:
            raise RuntimeUnavailableError(
                f"{self.binary} executable not found. Please install {self.binary}."
            ) from e

    def _check(self, result: subprocess.CompletedProcess, command: str) -> str:
        """Raise on non-zero exit, return stripped stdout otherwise."""
        if result.returncode != 0:
            output = (result.stderr or "").strip() or (result.stdout or "").strip()
            lowered = output.lower()
            if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
                raise ContainerNotFoundError(command, result.returncode, output)
            raise RuntimeCommandError(command, result.returncode, output)
        return (result.stdout or "").strip()

    # ------------------------------------------------------------------
    # Availability & images
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        """Check the runtime daemon answers. Never raises."""
        try:
            result = subprocess.run(
                [self.binary, "info", "--format", "{{.ID}}"],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            logger.debug("Runtime probe failed: %s", e)
            return False
        return result.returncode == 0

    def image_exists(self, name: str) -> bool:
        result = self._run(["image", "inspect", name])
        return result.returncode == 0

    def build_image(
        self,
        tag: str,
        context_path: Path,
        dockerfile_path: Optional[Path] = None,
    ) -> None:
        """Build an image from ``context_path``."""
        args = ["build", "-t", tag]
        if dockerfile_path is not None:
            args += ["-f", str(dockerfile_path)]
        args.append(str(context_path))
        logger.info("Building image %s from %s", tag, context_path)
        self._check(self._run(args), "docker build")

    @staticmethod
    def resolve_build_file(project_root: Path, plugin_root: Path) -> Optional[Path]:
        """Project ``Dockerfile.worker`` first, then the plugin default."""
        candidates = (
            Path(project_root) / PROJECT_DOCKERFILE,
            Path(plugin_root) / PLUGIN_DOCKERFILE,
        )
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    # ------------------------------------------------------------------
    # Container lifecycle
    # ------------------------------------------------------------------

    def build_run_args(self, options: ContainerOptions) -> tuple[list[str], dict[str, str]]:
        """Build ``run`` arguments plus the secret variables for the child env.

        Secrets are passed as ``-e NAME`` and resolved from the child
        process environment, so their values never appear in argv.
        """
        args = ["run", "-d", "--name", options.container_name]

        labels = {LABEL_MANAGED: "true", LABEL_WORKER_ID: options.worker_id}
        if options.is_drone:
            labels[LABEL_DRONE_NAME] = options.drone_name
            labels[LABEL_TYPE] = "drone"
            if options.session_id:
                labels[LABEL_SESSION_ID] = options.session_id
        elif options.thread_name:
            labels[LABEL_THREAD] = options.thread_name
        labels.update(options.labels)
        for key, value in labels.items():
            args += ["--label", f"{key}={value}"]

        args += ["--memory", options.memory]
        args += ["-v", f"{options.db_dir}:{CONTAINER_DB_DIR}:rw"]
        if options.repo_dir is not None:
            args += ["-v", f"{options.repo_dir}:{CONTAINER_REPO_DIR}:rw"]

        env = {ENV_WORKER_ID: options.worker_id, ENV_MAX_ITERATIONS: str(options.max_iterations)}
        if options.is_drone:
            env[ENV_DRONE_NAME] = options.drone_name
            if options.session_id:
                env[ENV_SESSION_ID] = options.session_id
        elif options.thread_name:
            env[ENV_THREAD_NAME] = options.thread_name
        env.update(options.env)
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]

        secrets: dict[str, str] = {}
        if options.auth_mode == "env":
            if not options.api_key:
                raise ValueError("auth_mode 'env' requires an API key")
            secrets[ENV_API_KEY] = options.api_key
        elif options.auth_mode == "oauth":
            if not options.oauth_token:
                raise ValueError("auth_mode 'oauth' requires an OAuth token")
            secrets[ENV_OAUTH_TOKEN] = options.oauth_token
        elif options.auth_mode == "config":
            if options.config_dir is None:
                raise ValueError("auth_mode 'config' requires a config directory")
            args += ["-v", f"{options.config_dir}:{CONTAINER_CLAUDE_DIR}:ro"]
        else:
            raise ValueError(f"Unknown auth mode: {options.auth_mode}")
        for name in secrets:
            args += ["-e", name]

        args.append(options.image)
        return args, secrets

    def spawn(self, options: ContainerOptions) -> str:
        """Start a detached container and return its id."""
        args, secrets = self.build_run_args(options)
        child_env = {**os.environ, **secrets} if secrets else None
        container_id = self._check(self._run(args, env=child_env), "docker run")
        logger.info(
            "Spawned %s for worker %s", container_id[:12], options.worker_id[:8]
        )
        return container_id

    def kill(self, container_id: str) -> None:
        """Kill immediately (SIGKILL)."""
        self._check(self._run(["kill", container_id]), "docker kill")

    def stop(self, container_id: str, timeout_seconds: int = DEFAULT_STOP_TIMEOUT_SECONDS) -> None:
        """Stop gracefully: SIGTERM, then SIGKILL after ``timeout_seconds``."""
        self._check(
            self._run(["stop", "--time", str(timeout_seconds), container_id]), "docker stop"
        )

    def remove(self, container_id: str) -> None:
        """Force-remove a container."""
        self._check(self._run(["rm", "-f", container_id]), "docker rm")

    def list(self, label_filter: Optional[dict[str, str]] = None) -> list[ContainerInfo]:
        """List containers (running or not) matching every label in ``label_filter``."""
        args = ["ps", "-a"]
        for key, value in (label_filter or {}).items():
            args += ["--filter", f"label={key}={value}"]
        args += ["--format", "{{json .}}"]
        output = self._check(self._run(args), "docker ps")

        containers = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed container line: %s", line[:100])
                continue
            containers.append(
                ContainerInfo(
                    id=data.get("ID", ""),
                    name=data.get("Names", ""),
                    status=data.get("Status", ""),
                    state=data.get("State", ""),
                    labels=parse_labels(data.get("Labels", "")),
                )
            )
        return containers

    def inspect_state(self, container_id: str) -> ContainerState:
        """Inspect container state.

        Raises:
            ContainerNotFoundError: If the container does not exist.
        """
        output = self._check(
            self._run(["inspect", "--format", "{{json .State}}", container_id]),
            "docker inspect",
        )
        try:
            state = json.loads(output)
        except json.JSONDecodeError as e:
            raise RuntimeCommandError("docker inspect", 0, f"Unparseable state: {output[:100]}") from e
        return ContainerState(
            running=bool(state.get("Running", False)),
            exit_code=state.get("ExitCode"),
            status=state.get("Status", ""),
        )

    def is_running(self, container_id: str) -> Optional[bool]:
        """True/False for an existing container, None when it does not exist."""
        try:
            return self.inspect_state(container_id).running
        except ContainerNotFoundError:
            return None

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(
        self,
        workers: Iterable[Worker],
        mark_status: Callable[[str, str], bool],
    ) -> ReconcileResult:
        """Bring registry state in line with the runtime.

        ``mark_status(worker_id, status)`` must return True only when the
        record actually changed, which makes a second pass a no-op.
        Workers without a container id have not finished spawning and are
        skipped.
        """
        result = ReconcileResult()
        for worker in workers:
            if not worker.is_running or not worker.is_spawned:
                continue
            result.checked += 1

            running = self.is_running(worker.container_id)
            if running:
                continue

            if not mark_status(worker.id, "failed"):
                continue
            result.updated += 1

            if running is None:
                # Already gone, nothing to remove
                result.removed += 1
                continue

            try:
                self.remove(worker.container_id)
                result.removed += 1
            except RuntimeCommandError as e:
                logger.warning(
                    "Could not remove dead container %s: %s", worker.container_id[:12], e
                )
        return result

    def cleanup_orphans(self, active_worker_ids: Iterable[str]) -> int:
        """Remove managed containers whose worker is not active.

        Returns:
            Number of containers removed.
        """
        active = set(active_worker_ids)
        removed = 0
        for container in self.list({LABEL_MANAGED: "true"}):
            worker_id = container.labels.get(LABEL_WORKER_ID)
            if worker_id and worker_id in active:
                continue
            try:
                self.remove(container.id)
                removed += 1
                logger.info(
                    "Removed orphan container %s (worker=%s)", container.id[:12], worker_id
                )
            except RuntimeCommandError as e:
                logger.warning("Failed to remove orphan %s: %s", container.id[:12], e)
        return removed
