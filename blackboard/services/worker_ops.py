"""Drain and kill: the cancellation paths for running workers."""

import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

from ..config.constants import DEFAULT_STOP_TIMEOUT_SECONDS
from ..exceptions import AmbiguousWorkerError, ContainerRuntimeError, WorkerNotFoundError
from ..models.threads import ThreadStore
from ..models.workers import Worker, WorkerRegistry
from ..runtime.docker import DockerRuntime

logger = logging.getLogger(__name__)


@dataclass
class DrainOutcome:
    worker_id: str
    container_id: str
    owner: Optional[str]
    success: bool
    error: Optional[str] = None


@dataclass
class DrainResult:
    drained: int = 0
    failed: int = 0
    workers: list[DrainOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "drained": self.drained,
            "failed": self.failed,
            "workers": [asdict(w) for w in self.workers],
        }


def drain_workers(
    registry: WorkerRegistry,
    runtime: DockerRuntime,
    force: bool = False,
    timeout: int = DEFAULT_STOP_TIMEOUT_SECONDS,
) -> DrainResult:
    """Stop (or kill, with ``force``) every running worker.

    Each worker is marked killed even when the runtime call fails.
    """
    result = DrainResult()
    for worker in registry.list_active():
        error = None
        if worker.is_spawned:
            try:
                if force:
                    runtime.kill(worker.container_id)
                else:
                    runtime.stop(worker.container_id, timeout)
            except ContainerRuntimeError as e:
                error = getattr(e, "stderr", "") or str(e)
                logger.warning("Failed to stop worker %s: %s", worker.short_id, error)

        registry.update_status(worker.id, "killed")
        if error is None:
            result.drained += 1
        else:
            result.failed += 1
        result.workers.append(
            DrainOutcome(
                worker_id=worker.id,
                container_id=worker.container_id,
                owner=worker.owner_name,
                success=error is None,
                error=error,
            )
        )
    return result


def resolve_kill_target(registry: WorkerRegistry, threads: ThreadStore, ref: str) -> Worker:
    """Find the running worker ``ref`` names.

    Tried in order: exact worker id, unique id prefix, then a thread name
    with exactly one running worker.

    Raises:
        AmbiguousWorkerError: The prefix or thread matches several workers.
        WorkerNotFoundError: Nothing matches.
    """
    worker = registry.get(ref)
    if worker is not None and worker.is_running:
        return worker

    matches = registry.find_by_prefix(ref)
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise AmbiguousWorkerError(ref, [w.id for w in matches])

    thread = threads.get_by_name(ref)
    if thread is None:
        raise WorkerNotFoundError(ref)

    running = [w for w in registry.list_for_owner(thread.id) if w.is_running]
    if len(running) > 1:
        raise AmbiguousWorkerError(ref, [w.id for w in running])
    if not running:
        raise WorkerNotFoundError(ref, f"No running workers found for thread '{thread.name}'")
    return running[0]


def kill_worker(registry: WorkerRegistry, runtime: DockerRuntime, worker: Worker) -> bool:
    """Kill the worker's container and mark it killed.

    Returns:
        Whether the runtime kill succeeded. The record is marked killed
        either way.
    """
    succeeded = False
    if worker.is_spawned:
        try:
            runtime.kill(worker.container_id)
            succeeded = True
        except ContainerRuntimeError as e:
            logger.warning(
                "Kill failed for %s (container may already be dead): %s", worker.short_id, e
            )
    registry.update_status(worker.id, "killed")
    return succeeded
