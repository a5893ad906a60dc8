"""Logging configuration and utilities."""

import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logger(
    name: str = "wallet_tracker",
    level: int = logging.INFO,
    log_dir: Optional[str] = None
) -> logging.Logger:
    """
    Configure and return the tracker logger.

    Calling it again (e.g. after the config file has been read) updates the
    level and attaches the file handler if one is not present yet.

    Args:
        name: Logger name
        level: Logging level
        log_dir: Log directory path, relative to the project root (optional)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if not has_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    for handler in logger.handlers:
        handler.setLevel(level)

    if log_dir and not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        log_path = Path(log_dir)
        if not log_path.is_absolute():
            root_dir = Path(__file__).parent.parent
            log_path = root_dir / log_dir
        log_path.mkdir(parents=True, exist_ok=True)

        # One file per day
        log_file = log_path / f"{datetime.now().strftime('%Y-%m-%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


# Global logger instance (default configuration)
log = setup_logger()
