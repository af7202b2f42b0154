"""
Logging setup for taskgraph.

Library modules log through `logging.getLogger(__name__)` and never add
handlers. An application calls `get_logger()` to attach one stdout
handler to the package logger; every `taskgraph.*` logger propagates to
it. The level defaults to the TASKGRAPH_LOG_LEVEL environment variable.
"""

import logging
import os
import sys
from typing import Optional, Union

PACKAGE_LOGGER = "taskgraph"
LEVEL_ENV = "TASKGRAPH_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def resolve_level(level: Union[int, str, None] = None) -> int:
    """
    Turn a level name or number into a logging level.

    Raises:
        ValueError: If a name is not a known level
    """
    if level is None:
        level = os.getenv(LEVEL_ENV) or "INFO"
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def get_logger(name: Optional[str] = None, level: Union[int, str, None] = None) -> logging.Logger:
    """Get a logger under the taskgraph namespace, configuring output once.

    Args:
        name: Child name ("examples" -> "taskgraph.examples"); None for the
            package logger itself
        level: Level name or number (defaults to TASKGRAPH_LOG_LEVEL, then INFO)

    Returns:
        Configured logger
    """
    package = logging.getLogger(PACKAGE_LOGGER)
    if not package.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package.addHandler(handler)

    if not name or name == PACKAGE_LOGGER:
        logger = package
    elif name.startswith(PACKAGE_LOGGER + "."):
        logger = logging.getLogger(name)
    else:
        logger = logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
    logger.setLevel(resolve_level(level))
    return logger
