"""Configuration utilities for blackboard."""

import os
from pathlib import Path
from typing import Optional, Tuple

from ..exceptions import ConfigurationError
from .constants import (
    DB_FILENAME,
    DEFAULT_CONTAINER_RUNTIME,
    ENV_VAR_DEFINITIONS,
    PROJECT_MARKER_DIR,
)


def find_project_root(start: Optional[Path] = None) -> Optional[Path]:
    """Find the Claude Code project root.

    ``CLAUDE_PROJECT_DIR`` wins when set; otherwise walk up from ``start``
    (default: the working directory) to the nearest directory containing
    ``.claude``.
    """
    project_dir = os.environ.get("CLAUDE_PROJECT_DIR")
    if project_dir:
        return Path(project_dir)

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / PROJECT_MARKER_DIR).is_dir():
            return candidate
    return None


def get_db_path(override: Optional[str] = None) -> Path:
    """Get the database path.

    Resolution order: explicit ``override`` (the ``--db`` option), the
    BLACKBOARD_DB environment variable, then ``<project>/.claude/blackboard.db``.

    Raises:
        ConfigurationError: If no project root can be found.
    """
    if override:
        return Path(override)

    env_db = os.environ.get("BLACKBOARD_DB")
    if env_db:
        return Path(env_db)

    root = find_project_root()
    if root is None:
        raise ConfigurationError(
            "Could not find a project directory containing .claude/. "
            "Run from inside a project or pass --db.",
            setting="BLACKBOARD_DB",
        )
    return root / PROJECT_MARKER_DIR / DB_FILENAME


def get_plugin_root() -> Path:
    """Plugin root: CLAUDE_PLUGIN_ROOT, else the directory above the package."""
    plugin_root = os.environ.get("CLAUDE_PLUGIN_ROOT")
    if plugin_root:
        return Path(plugin_root)
    return Path(__file__).resolve().parent.parent.parent


def get_container_runtime() -> str:
    """Name of the container runtime binary to invoke."""
    try:
        return get_env_var("BLACKBOARD_CONTAINER_RUNTIME") or DEFAULT_CONTAINER_RUNTIME
    except ValueError as e:
        raise ConfigurationError(str(e), setting="BLACKBOARD_CONTAINER_RUNTIME") from e


def validate_env_var(name: str, value: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Validate a single environment variable value.

    Args:
        name: The environment variable name.
        value: The current value (or None if not set).

    Returns:
        Tuple of (is_valid, error_message).
    """
    if name not in ENV_VAR_DEFINITIONS:
        return True, None  # Unknown vars are always valid

    valid_values = ENV_VAR_DEFINITIONS[name].get("valid_values")
    if value is None or valid_values is None:
        return True, None

    if value.lower() not in [v.lower() for v in valid_values]:
        return False, f"Invalid value '{value}' for {name}. Valid values: {valid_values}"

    return True, None


def get_env_var(name: str, validate: bool = True) -> Optional[str]:
    """Get an environment variable with optional validation.

    Raises:
        ValueError: If validate=True and the value is invalid.
    """
    value = os.environ.get(name)

    if validate and value is not None:
        is_valid, error = validate_env_var(name, value)
        if not is_valid:
            raise ValueError(error)

    if value is None and name in ENV_VAR_DEFINITIONS:
        return ENV_VAR_DEFINITIONS[name].get("default")

    return value
