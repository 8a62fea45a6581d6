"""
Logging helpers for MPV Remote.
Every module gets its logger through setup_logger(__name__).
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logger(name: str, level: Optional[Union[int, str]] = None) -> logging.Logger:
    """
    Get a named logger.

    Handlers live on the root logger (see configure_logging), so module
    loggers only carry an optional level of their own.

    Args:
        name: Logger name, normally the module's __name__
        level: Optional level override for this logger

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None
) -> None:
    """
    Configure root logging for a process.

    Args:
        level: Root log level (name or number)
        log_file: Optional file to log to in addition to stderr
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True
    )
