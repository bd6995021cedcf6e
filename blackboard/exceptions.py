"""Custom exception hierarchy for blackboard.

Exception Hierarchy:
    BlackboardError (base)
    ├── DatabaseError - SQLite/registry operations
    │   ├── DatabaseBusyError (retryable)
    │   └── DatabaseQueryError
    ├── ContainerRuntimeError - container runtime CLI
    │   ├── RuntimeUnavailableError
    │   ├── RuntimeCommandError
    │   │   └── ContainerNotFoundError
    │   └── BuildFileNotFoundError
    ├── AuthenticationError - no usable credential
    ├── LookupFailedError - a named worker/drone could not be resolved
    │   ├── WorkerNotFoundError
    │   ├── AmbiguousWorkerError
    │   ├── DroneNotFoundError
    │   ├── DroneNotRunningError
    │   └── DroneAlreadyRunningError
    └── ConfigurationError - settings/environment issues

Usage:
    from blackboard.exceptions import DatabaseBusyError, RuntimeCommandError

    try:
        runtime.kill(worker.container_id)
    except RuntimeCommandError as e:
        logger.warning("Kill failed: %s", e.stderr)
"""

from typing import Any, Optional


class BlackboardError(Exception):
    """Base exception for all blackboard errors.

    Attributes:
        message: Human-readable error description
        context: Additional context about the error (e.g., IDs, paths)
        retryable: Whether this error might succeed on retry
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        **context: Any,
    ) -> None:
        self.message = message
        self.context = context
        self.retryable = retryable
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with context."""
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


# =============================================================================
# Database Errors
# =============================================================================


class DatabaseError(BlackboardError):
    """Base exception for database operations."""

    pass


class DatabaseBusyError(DatabaseError):
    """Another process holds the SQLite write lock - retryable."""

    def __init__(self, message: str = "Database is busy", **context: Any) -> None:
        super().__init__(message, retryable=True, **context)


class DatabaseQueryError(DatabaseError):
    """A database query failed."""

    def __init__(
        self,
        message: str = "Database query failed",
        *,
        query: Optional[str] = None,
        **context: Any,
    ) -> None:
        if query:
            context["query"] = query[:100] + "..." if len(query) > 100 else query
        super().__init__(message, **context)


# =============================================================================
# Container Runtime Errors
# =============================================================================


class ContainerRuntimeError(BlackboardError):
    """Base exception for container runtime operations."""

    pass


class RuntimeUnavailableError(ContainerRuntimeError):
    """The container runtime is not installed or not responding."""

    def __init__(
        self,
        message: str = "Docker is not available. Please ensure Docker is installed and running.",
        **context: Any,
    ) -> None:
        super().__init__(message, **context)


class RuntimeCommandError(ContainerRuntimeError):
    """A runtime CLI invocation exited non-zero.

    The adapter never interprets the exit code beyond success/failure;
    callers decide whether the failure is expected.
    """

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"{command} failed (exit {exit_code}): {stderr}")


class ContainerNotFoundError(RuntimeCommandError):
    """The referenced container does not exist."""

    pass


class BuildFileNotFoundError(ContainerRuntimeError):
    """No Dockerfile could be located for an image build."""

    def __init__(self, project_root: str, plugin_root: str) -> None:
        self.project_root = project_root
        self.plugin_root = plugin_root
        super().__init__(
            "No Dockerfile found. Expected either:\n"
            f"  - {project_root}/Dockerfile.worker (project-specific)\n"
            f"  - {plugin_root}/blackboard/docker/Dockerfile (plugin default)\n\n"
            "Create a Dockerfile.worker in your project root to customise the worker image."
        )


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthenticationError(BlackboardError):
    """No usable authentication method for spawned agents."""

    def __init__(self, message: str, *, suggestion: Optional[str] = None) -> None:
        self.suggestion = suggestion
        if suggestion:
            message = f"{message}\n\n{suggestion}"
        super().__init__(message)


# =============================================================================
# Lookup Errors
# =============================================================================


class LookupFailedError(BlackboardError):
    """Base exception for unresolvable worker/drone references."""

    pass


class WorkerNotFoundError(LookupFailedError):
    """No running worker matches the given reference."""

    def __init__(self, reference: str, message: Optional[str] = None) -> None:
        self.reference = reference
        super().__init__(
            message or f"No running worker or thread found matching '{reference}'"
        )


class AmbiguousWorkerError(LookupFailedError):
    """A reference matched more than one running worker."""

    def __init__(self, reference: str, candidates: list[str]) -> None:
        self.reference = reference
        self.candidates = candidates
        super().__init__(
            f"Ambiguous worker reference '{reference}'. Matches: {', '.join(candidates)}"
        )


class ThreadNotFoundError(LookupFailedError):
    """No thread has the given name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'Thread "{name}" not found')


class ThreadNotSpawnableError(BlackboardError):
    """The thread's status does not allow new workers."""

    def __init__(self, name: str, status: str) -> None:
        self.name = name
        self.status = status
        super().__init__(
            f'Thread "{name}" has status "{status}". '
            "Only active or paused threads can spawn workers."
        )


class DroneNotFoundError(LookupFailedError):
    """Raised when a drone is not found."""

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f'Drone "{reference}" not found')


class DroneNotRunningError(LookupFailedError):
    """The drone has no running session."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'Drone "{name}" is not running')


class DroneAlreadyRunningError(LookupFailedError):
    """A non-terminal session already exists for the drone."""

    def __init__(self, name: str, session_id: str) -> None:
        self.name = name
        self.session_id = session_id
        super().__init__(f'Drone "{name}" is already running (session: {session_id})')


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(BlackboardError):
    """Configuration or settings error."""

    def __init__(
        self,
        message: str = "Configuration error",
        *,
        setting: Optional[str] = None,
        **context: Any,
    ) -> None:
        if setting:
            context["setting"] = setting
        super().__init__(message, **context)
