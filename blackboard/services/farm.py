"""
Fleet orchestrator - the farm loop.

Runs every thread with pending work through a bounded pool of worker
containers:

- a FIFO queue of threads, re-enqueued items going to the tail
- at most ``concurrency`` workers alive at once
- spawn failures retried a bounded number of times
- stale heartbeats and vanished containers self-heal (killed, marked
  failed, requeued) rather than aborting the run

The registry is the source of truth. The in-memory queue and tracking map
are a cache a restarted farm can rebuild from the registry and threads.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..config.constants import (
    ALLOWED_THREAD_STATUSES,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_SPAWN_RETRIES,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_STALE_TIMEOUT_SECONDS,
    DEFAULT_WORKER_IMAGE,
    DEFAULT_WORKER_MEMORY,
)
from ..exceptions import (
    ConfigurationError,
    ContainerRuntimeError,
    DatabaseBusyError,
    DatabaseError,
    RuntimeUnavailableError,
    ThreadNotFoundError,
    ThreadNotSpawnableError,
)
from ..models.threads import Thread, WorkSource
from ..models.workers import Worker, WorkerRegistry
from ..runtime.docker import ContainerOptions, DockerRuntime
from ..utils.ids import new_id, short_id
from ..utils.retry import retry
from .auth import AuthResolver, Credential
from .images import ensure_image

logger = logging.getLogger(__name__)


class FarmPhase(Enum):
    INIT = "init"
    PREFLIGHT = "preflight"
    DRAINING = "draining"
    DONE = "done"


@dataclass
class FarmConfig:
    """Configuration for a farm run."""
    threads: Optional[list[str]] = None  # None = every active thread with pending work
    concurrency: int = DEFAULT_CONCURRENCY
    auth_mode: str = "env"
    api_key: Optional[str] = None
    repo_dir: Optional[Path] = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    memory: str = DEFAULT_WORKER_MEMORY
    image: str = DEFAULT_WORKER_IMAGE
    build: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    stale_timeout: float = DEFAULT_STALE_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_SPAWN_RETRIES
    project_root: Path = field(default_factory=Path.cwd)
    plugin_root: Optional[Path] = None

    def __post_init__(self):
        if self.concurrency < 1:
            raise ConfigurationError("Concurrency must be at least 1", setting="concurrency")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries cannot be negative", setting="max_retries")


@dataclass
class WorkQueueItem:
    thread: Thread
    retries: int = 0


@dataclass
class FarmStats:
    """Live counters, updated as the loop runs."""
    active: int = 0
    completed: int = 0
    failed: int = 0
    remaining: int = 0
    spawn_attempts: int = 0

    def summary(self) -> str:
        return (
            f"Status: {self.active} active | {self.completed} completed | "
            f"{self.failed} failed | {self.remaining} remaining"
        )


@dataclass
class FarmResult:
    """Final tallies, one outcome per distinct thread."""
    completed: int
    failed: int
    total: int

    def to_dict(self) -> dict:
        return {"completed": self.completed, "failed": self.failed, "total_threads": self.total}


class FleetOrchestrator:
    """
    Drives the farm loop.

    Usage:
        farm = FleetOrchestrator(registry, runtime, threads, AuthResolver(), config, db_path)
        result = farm.run()
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        runtime: DockerRuntime,
        work_source: WorkSource,
        auth: AuthResolver,
        config: FarmConfig,
        db_path: Path,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Optional[Callable[[FarmStats], None]] = None,
    ):
        self.registry = registry
        self.runtime = runtime
        self.work_source = work_source
        self.auth = auth
        self.config = config
        self.db_path = Path(db_path)
        self._sleep = sleep
        self._on_progress = on_progress

        self.phase = FarmPhase.INIT
        self.stats = FarmStats()
        self.queue: deque[WorkQueueItem] = deque()
        self.tracked: dict[str, WorkQueueItem] = {}  # worker id -> item
        self.credential: Optional[Credential] = None
        # thread id -> last outcome ('completed' / 'failed' / None while pending)
        self._outcomes: dict[str, Optional[str]] = {}

        self._busy_retry = retry(
            max_retries=5,
            min_backoff=0.1,
            max_backoff=2.0,
            exceptions=(DatabaseBusyError,),
            sleep=sleep,
        )
        self._mark_status = self._busy_retry(self.registry.update_status)

    # ------------------------------------------------------------------
    # Preflight
    # ------------------------------------------------------------------

    def preflight(self) -> list[Thread]:
        """Check the runtime, prepare the image, sweep orphans, resolve work and auth.

        Raises:
            RuntimeUnavailableError, BuildFileNotFoundError, RuntimeCommandError,
            AuthenticationError: fatal for the run.
        """
        self.prepare_runtime()
        items = self.resolve_items()
        self.credential = self.auth.resolve(self.config.auth_mode, self.config.api_key)
        return items

    def prepare_runtime(self) -> None:
        """Runtime and image checks plus registry housekeeping."""
        self.phase = FarmPhase.PREFLIGHT

        if not self.runtime.is_available():
            raise RuntimeUnavailableError()

        plugin_root = self.config.plugin_root or self.config.project_root
        ensure_image(
            self.runtime,
            self.config.image,
            self.config.project_root,
            plugin_root,
            force_build=self.config.build,
        )

        try:
            self.registry.purge_old()
        except DatabaseError as e:
            logger.warning("Could not purge old worker records: %s", e)

        try:
            removed = self.runtime.cleanup_orphans(self.registry.active_ids())
            if removed:
                logger.info("Cleaned up %d orphaned containers", removed)
        except (ContainerRuntimeError, DatabaseError) as e:
            logger.warning("Orphan cleanup failed: %s", e)

    def resolve_items(self) -> list[Thread]:
        """Explicit thread names, or every active thread with pending work."""
        if not self.config.threads:
            return [t for t in self.work_source.list_active() if self.work_source.has_pending_work(t)]

        items: list[Thread] = []
        seen: set[str] = set()
        for name in self.config.threads:
            thread = self.work_source.get_by_name(name)
            if thread is None:
                logger.warning("Thread '%s' not found, skipping", name)
                continue
            if thread.status not in ALLOWED_THREAD_STATUSES:
                logger.warning("Thread '%s' is %s, skipping", name, thread.status)
                continue
            if thread.id in seen:
                continue
            seen.add(thread.id)
            items.append(thread)
        return items

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def start(self, items: list[Thread]) -> None:
        """Queue the items and perform the initial fill."""
        self.phase = FarmPhase.DRAINING
        for thread in items:
            self.queue.append(WorkQueueItem(thread))
            self._outcomes[thread.id] = None
        self.stats.remaining = len(items)
        self.fill()
        self._report()

    def run(self) -> FarmResult:
        """Run preflight and the monitor loop until nothing is left."""
        items = self.preflight()
        if not items:
            logger.warning("No threads with pending work")
        self.start(items)

        while self.stats.active > 0 or self.queue:
            self._sleep(self.config.poll_interval)
            self.tick()

        self.phase = FarmPhase.DONE
        return self.result()

    def tick(self) -> None:
        """One monitor pass: stale detection, completion detection, refill."""
        self.detect_stale()
        self.detect_completions()
        self.fill()
        self._report()

    def result(self) -> FarmResult:
        outcomes = list(self._outcomes.values())
        return FarmResult(
            completed=outcomes.count("completed"),
            failed=outcomes.count("failed"),
            total=len(outcomes),
        )

    def _report(self) -> None:
        if self._on_progress:
            self._on_progress(self.stats)

    def _requeue(self, item: WorkQueueItem) -> None:
        self.queue.append(WorkQueueItem(item.thread))
        self.stats.remaining += 1
        self._outcomes[item.thread.id] = None

    def fill(self) -> None:
        """Spawn from the queue head until it is empty or the pool is full."""
        while self.queue and self.stats.active < self.config.concurrency:
            item = self.queue.popleft()
            worker_id = self.spawn(item.thread)

            if worker_id is not None:
                self.stats.active += 1
                self.stats.remaining -= 1
                self.tracked[worker_id] = item
                continue

            item.retries += 1
            if item.retries <= self.config.max_retries:
                self.queue.append(item)
            else:
                logger.warning(
                    "Thread '%s' failed to spawn after %d attempts, giving up",
                    item.thread.name,
                    item.retries,
                )
                self.stats.failed += 1
                self.stats.remaining -= 1
                self._outcomes[item.thread.id] = "failed"

    def spawn(self, thread: Thread) -> Optional[str]:
        """One spawn attempt from the queue.

        Returns:
            The worker id, or None if the attempt failed.
        """
        try:
            return self.start_worker(thread)
        except (ContainerRuntimeError, DatabaseBusyError) as e:
            logger.warning("Failed to spawn worker for '%s': %s", thread.name, e)
            return None

    def start_worker(self, thread: Thread) -> str:
        """Insert a worker record and start its container.

        A worker whose container could not be started or recorded is marked
        failed and its container discarded before the error propagates.

        Raises:
            ContainerRuntimeError: The container did not start.
            DatabaseBusyError: The registry stayed locked.
        """
        self.stats.spawn_attempts += 1
        credential = self.credential
        if credential is None:
            raise ConfigurationError("spawn called before authentication was resolved")

        worker_id = new_id()
        self.registry.insert(
            Worker(
                id=worker_id,
                thread_id=thread.id,
                auth_mode=credential.mode,
                max_iterations=self.config.max_iterations,
            )
        )

        options = ContainerOptions(
            image=self.config.image,
            worker_id=worker_id,
            db_dir=self.db_path.parent,
            auth_mode=credential.mode,
            repo_dir=self.config.repo_dir,
            memory=self.config.memory,
            max_iterations=self.config.max_iterations,
            thread_name=thread.name,
            api_key=credential.api_key,
            oauth_token=credential.oauth_token,
            config_dir=credential.config_dir,
        )
        try:
            container_id = self.runtime.spawn(options)
        except ContainerRuntimeError:
            self._mark_status(worker_id, "failed")
            raise

        try:
            self._busy_retry(self.registry.update_container_id)(worker_id, container_id)
        except DatabaseBusyError:
            logger.warning("Registry busy, abandoning worker %s", short_id(worker_id))
            self._discard_container(container_id)
            try:
                self._mark_status(worker_id, "failed")
            except DatabaseBusyError:
                logger.warning("Could not mark worker %s failed", short_id(worker_id))
            raise

        logger.info("Spawned worker %s for thread '%s'", short_id(worker_id), thread.name)
        return worker_id

    def spawn_thread(self, name: str) -> Worker:
        """Start a single worker for one named thread, outside the farm loop.

        Raises:
            ThreadNotFoundError, ThreadNotSpawnableError, plus everything
            ``prepare_runtime``, authentication and ``start_worker`` raise.
        """
        thread = self.work_source.get_by_name(name)
        if thread is None:
            raise ThreadNotFoundError(name)
        if thread.status not in ALLOWED_THREAD_STATUSES:
            raise ThreadNotSpawnableError(thread.name, thread.status)

        self.prepare_runtime()
        self.credential = self.auth.resolve(self.config.auth_mode, self.config.api_key)
        worker_id = self.start_worker(thread)
        self.phase = FarmPhase.DONE
        return self.registry.get(worker_id)

    def _discard_container(self, container_id: str) -> None:
        for action in (self.runtime.kill, self.runtime.remove):
            try:
                action(container_id)
            except ContainerRuntimeError as e:
                logger.debug("Cleanup of container %s failed: %s", container_id[:12], e)

    def detect_stale(self) -> None:
        """Kill and fail tracked workers whose heartbeat has gone quiet."""
        for worker in self.registry.list_stale(self.config.stale_timeout):
            item = self.tracked.get(worker.id)
            if item is None:
                continue

            if worker.is_spawned:
                try:
                    self.runtime.kill(worker.container_id)
                except ContainerRuntimeError as e:
                    logger.debug("Kill of stale worker %s failed: %s", worker.short_id, e)

            if not self._mark_status(worker.id, "failed"):
                # Finished concurrently; completion detection picks it up
                continue

            logger.warning("Worker %s for '%s' went stale", worker.short_id, item.thread.name)
            del self.tracked[worker.id]
            self.stats.active -= 1
            self.stats.failed += 1
            self._outcomes[item.thread.id] = "failed"
            if self.work_source.has_pending_work(item.thread):
                self._requeue(item)

    def detect_completions(self) -> None:
        """Retire tracked workers that are no longer running."""
        if not self.tracked:
            return

        workers = [w for w in (self.registry.get(wid) for wid in self.tracked) if w is not None]
        try:
            self.runtime.reconcile(workers, self._mark_status)
        except (ContainerRuntimeError, DatabaseError) as e:
            logger.warning("Reconciliation failed: %s", e)

        active_ids = self.registry.active_ids()
        for worker_id in list(self.tracked):
            if worker_id in active_ids:
                continue
            item = self.tracked.pop(worker_id)
            self.stats.active -= 1
            if self.work_source.has_pending_work(item.thread):
                logger.info("Thread '%s' has more steps, requeueing", item.thread.name)
                self._requeue(item)
            else:
                self.stats.completed += 1
                self._outcomes[item.thread.id] = "completed"
