"""Logging setup for the blackboard CLI.

Modules use the standard pattern:

    import logging
    logger = logging.getLogger(__name__)

and the CLI entry point calls ``setup_cli_logging`` once. Diagnostics go
to a rotating file in ~/.config/blackboard and, filtered by verbosity, to
stderr. User-facing progress goes through the rich console instead.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Max log file size: 5MB, keep 2 backups
_MAX_LOG_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 2

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_HANDLER_TAG = "_blackboard_cli"


def _stderr_level(verbose: bool, quiet: bool) -> int:
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.ERROR
    return logging.WARNING


def setup_cli_logging(
    verbose: bool = False,
    quiet: bool = False,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """Configure the ``blackboard`` logger for a CLI invocation.

    Safe to call repeatedly: handlers installed by a previous call are
    replaced rather than duplicated.
    """
    logger = logging.getLogger("blackboard")
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            logger.removeHandler(handler)
            handler.close()

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(_stderr_level(verbose, quiet))
    stderr_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    setattr(stderr_handler, _HANDLER_TAG, True)
    logger.addHandler(stderr_handler)

    log_dir = log_dir or Path.home() / ".config" / "blackboard"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "blackboard.log", maxBytes=_MAX_LOG_BYTES, backupCount=_BACKUP_COUNT
        )
    except OSError as e:
        logger.debug("File logging disabled: %s", e)
    else:
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        setattr(file_handler, _HANDLER_TAG, True)
        logger.addHandler(file_handler)

    return logger
