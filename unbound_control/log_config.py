"""
Logging setup shared by the control client.

The global level comes from environment variables:
- LOG_LEVEL: Python logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- DEBUG: "1"/"true" selects DEBUG when LOG_LEVEL is unset

Usage:
    from unbound_control.log_config import setup_logging

    setup_logging()
    logger = logging.getLogger(__name__)

Log records always go to stderr; stdout is reserved for the server response.
"""

import logging
import os
import sys
from typing import Optional

DEFAULT_LOG_LEVEL = "WARNING"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Guards against configuring the root logger twice
_logging_configured = False


def get_log_level() -> int:
    """Resolve the log level from the environment.

    Checked in order:
    1. LOG_LEVEL - explicit level name
    2. DEBUG - "1", "true", "yes" or "on" selects DEBUG

    Returns:
        A logging level constant
    """
    level_str = os.environ.get("LOG_LEVEL", "").upper().strip()

    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        if debug_flag in ("1", "true", "yes", "on"):
            level_str = "DEBUG"
        else:
            level_str = DEFAULT_LOG_LEVEL

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
        "FATAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.WARNING)


def setup_logging(level: Optional[int] = None) -> None:
    """Configure the root logger once per process.

    Args:
        level: Log level, None to read it from the environment
    """
    global _logging_configured

    if _logging_configured:
        return

    if level is None:
        level = get_log_level()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=True
    )

    _logging_configured = True
    logging.getLogger(__name__).debug(f"Logging configured: level={logging.getLevelName(level)}")
