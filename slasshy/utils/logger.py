import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d) - %(message)s'
LOG_MAX_BYTES = 2 * 1024 * 1024
LOG_BACKUPS = 3

# Library loggers that are too chatty at DEBUG
QUIET_LOGGERS = {
    "aiosqlite": logging.INFO,
    "asyncio": logging.INFO,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def setup_logging(level=logging.INFO, log_to_file=True, log_file: Optional[Union[str, Path]] = None):
    """
    Configures the root logger for the indexing service.

    Records go to stdout and, unless disabled, to a size-rotated file in the
    app-data directory. Calling it again replaces the previous handlers.
    """
    if log_file is None:
        from ..config import LOG_PATH
        log_file = LOG_PATH
    log_file = Path(log_file)

    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=LOG_MAX_BYTES,
                                           backupCount=LOG_BACKUPS, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logging.info(f"Logging initialized. Level: {logging.getLevelName(level)}, File: {log_file if log_to_file else '-'}")


def get_logger(name):
    """Returns a logger with the given name."""
    return logging.getLogger(name)
