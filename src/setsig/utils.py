"""Utility functions for gene set testing."""

import logging
from pathlib import Path
from typing import Optional, Union

LOG_FILE_NAME = 'pipeline.log'

# Marks handlers installed by setup_logging so repeated calls replace them
_HANDLER_FLAG = '_setsig_handler'


def setup_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: Union[int, str] = logging.INFO
) -> logging.Logger:
    """Send log records of every module to the console and, optionally, a log file.

    Handlers installed by an earlier call are removed first, so running the
    pipeline twice in one process does not duplicate messages.

    Args:
        log_dir: Directory for pipeline.log; no file is written when omitted
        level: Logging level, as a number or a name such as 'DEBUG'

    Returns:
        The package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown logging level: {level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in [h for h in root_logger.handlers if getattr(h, _HANDLER_FLAG, False)]:
        root_logger.removeHandler(handler)
        handler.close()

    handlers = []
    if log_dir:
        log_dir = ensure_dir(log_dir)
        file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, mode='w')
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    handlers.append(console_handler)

    for handler in handlers:
        setattr(handler, _HANDLER_FLAG, True)
        root_logger.addHandler(handler)

    logger = logging.getLogger('setsig')
    if log_dir:
        logger.info(f"Writing log to {log_dir / LOG_FILE_NAME}")
    return logger


def ensure_dir(path: Union[str, Path]) -> Path:
    """Create a directory and its parents if needed and return it as a Path."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
