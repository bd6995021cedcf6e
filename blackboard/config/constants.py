"""
Centralized constants for blackboard.

Every tunable default used by the runtime adapter, the registry and the
orchestrators lives here so the CLI, services and tests agree on them.
"""

from pathlib import Path

# =============================================================================
# PATHS
# =============================================================================

BLACKBOARD_CONFIG_DIR = Path.home() / ".config" / "blackboard"
DB_FILENAME = "blackboard.db"
PROJECT_MARKER_DIR = ".claude"  # Directory that marks a Claude Code project root

# Local Claude Code config directory, mounted read-only for config auth
CLAUDE_CONFIG_DIR = Path.home() / ".claude"
CLAUDE_CREDENTIALS_FILE = ".credentials.json"

# Build files
PROJECT_DOCKERFILE = "Dockerfile.worker"  # Project-specific, at project root
PLUGIN_DOCKERFILE = Path("blackboard") / "docker" / "Dockerfile"  # Under plugin root

# =============================================================================
# CONTAINER RUNTIME
# =============================================================================

DEFAULT_CONTAINER_RUNTIME = "docker"
SUPPORTED_CONTAINER_RUNTIMES = ("docker", "podman")

DEFAULT_WORKER_IMAGE = "blackboard-worker:latest"
DEFAULT_WORKER_MEMORY = "512m"
DEFAULT_DRONE_MEMORY = "1g"
DEFAULT_STOP_TIMEOUT_SECONDS = 30  # Grace period before the runtime sends SIGKILL

WORKER_CONTAINER_PREFIX = "blackboard-worker-"
DRONE_CONTAINER_PREFIX = "blackboard-drone-"

# Mount points inside the container
CONTAINER_DB_DIR = "/app/db"
CONTAINER_REPO_DIR = "/app/repo"
CONTAINER_CLAUDE_DIR = "/root/.claude"

# =============================================================================
# CONTAINER LABELS
# =============================================================================

LABEL_MANAGED = "blackboard.managed"
LABEL_WORKER_ID = "blackboard.worker-id"
LABEL_THREAD = "blackboard.thread"
LABEL_DRONE_NAME = "blackboard.drone-name"
LABEL_SESSION_ID = "blackboard.session-id"
LABEL_TYPE = "blackboard.type"

# =============================================================================
# CONTAINER ENVIRONMENT
# =============================================================================

ENV_WORKER_ID = "WORKER_ID"
ENV_THREAD_NAME = "THREAD_NAME"
ENV_DRONE_NAME = "DRONE_NAME"
ENV_SESSION_ID = "SESSION_ID"
ENV_MAX_ITERATIONS = "MAX_ITERATIONS"
ENV_DRONE_PROMPT = "DRONE_PROMPT"
ENV_COOLDOWN_SECONDS = "COOLDOWN_SECONDS"
ENV_API_KEY = "ANTHROPIC_API_KEY"
ENV_OAUTH_TOKEN = "CLAUDE_CODE_OAUTH_TOKEN"

# =============================================================================
# FLEET ORCHESTRATION
# =============================================================================

DEFAULT_CONCURRENCY = 3
DEFAULT_POLL_INTERVAL_SECONDS = 10
DEFAULT_STALE_TIMEOUT_SECONDS = 30  # Heartbeat age before a worker is stale
DEFAULT_MAX_SPAWN_RETRIES = 3  # Retries after the first attempt
DEFAULT_MAX_ITERATIONS = 50
ALLOWED_THREAD_STATUSES = ("active", "paused")

# =============================================================================
# DRONES
# =============================================================================

DEFAULT_DRONE_MAX_ITERATIONS = 100
DEFAULT_DRONE_TIMEOUT_MINUTES = 60
DEFAULT_DRONE_COOLDOWN_SECONDS = 60
DRONE_BRANCH_PREFIX = "drones"
DEFAULT_LOG_LIMIT = 50
LOG_FOLLOW_INTERVAL_SECONDS = 1.0

# =============================================================================
# REGISTRY
# =============================================================================

WORKER_STATUSES = ("running", "completed", "failed", "killed")
TERMINAL_WORKER_STATUSES = ("completed", "failed", "killed")
AUTH_MODES = ("env", "config", "oauth")
WORKER_RETENTION_SECONDS = 24 * 60 * 60  # Terminal records older than this are purged
SQLITE_BUSY_TIMEOUT_SECONDS = 5.0
SHORT_ID_LENGTH = 8

# Warn when an OAuth token expires within this window
OAUTH_EXPIRY_WARNING_SECONDS = 60 * 60

# =============================================================================
# ENVIRONMENT VARIABLES
# =============================================================================

# Environment variable definitions with validation rules
# Each entry: name -> {description, valid_values (None = any), default}
ENV_VAR_DEFINITIONS = {
    "BLACKBOARD_DB": {
        "description": "Path to the shared blackboard database",
        "valid_values": None,
        "default": None,
    },
    "BLACKBOARD_CONTAINER_RUNTIME": {
        "description": "Container runtime CLI to invoke",
        "valid_values": list(SUPPORTED_CONTAINER_RUNTIMES),
        "default": DEFAULT_CONTAINER_RUNTIME,
    },
    "CLAUDE_PROJECT_DIR": {
        "description": "Project root set by Claude Code",
        "valid_values": None,
        "default": None,
    },
    "CLAUDE_PLUGIN_ROOT": {
        "description": "Plugin root directory holding the default worker Dockerfile",
        "valid_values": None,
        "default": None,
    },
    ENV_API_KEY: {
        "description": "Anthropic API key passed to workers in env auth mode",
        "valid_values": None,
        "default": None,
    },
    ENV_OAUTH_TOKEN: {
        "description": "Claude Code OAuth token passed to workers in oauth auth mode",
        "valid_values": None,
        "default": None,
    },
}
