"""
Logging setup shared by the CLI, the orchestrator and the service.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = 'map_evaluation'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def verbosity_to_level(verbosity: int) -> int:
    """Map an integer verbosity to a logging level."""
    if verbosity <= 0:
        return logging.WARNING
    if verbosity < 4:
        return logging.INFO
    return logging.DEBUG


def setup_logging(verbosity: int = 2,
                  level: Optional[Union[str, int]] = None,
                  log_dir: Optional[Path] = None) -> logging.Logger:
    """
    Configure the package logger with a console and an optional file handler.

    Args:
        verbosity: Evaluation verbosity, used when no explicit level is given
        level: Explicit logging level name or number
        log_dir: If given, also log to a timestamped file in this directory

    Returns:
        The configured package logger
    """
    if level is None:
        level = verbosity_to_level(verbosity)
    elif isinstance(level, str):
        level = getattr(logging, level.upper())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Re-running setup replaces handlers instead of stacking them.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    # File handler
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        fh = logging.FileHandler(log_dir / f'map_evaluation_{timestamp}.log')
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger
