"""Shop ledger package.

Importing the package configures the ``shop_ledger`` logger with a console
handler. The rotating log file lives next to the ledger workbook and is
attached by :func:`attach_log_file` once the configuration has been read.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_DIR_NAME = ".logs"
LOG_FILE_NAME = "shop_ledger.log"
CONSOLE_LEVEL_ENV = "SHOP_LEDGER_LOG_LEVEL"

_FORMATTER = logging.Formatter(
    fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _configure_logging() -> logging.Logger:
    """Configure the package logger with a stderr console handler."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    console_level = os.environ.get(CONSOLE_LEVEL_ENV, "WARNING").upper()
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.getLevelNamesMapping().get(console_level, logging.WARNING))
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)
    return logger


def attach_log_file(directory: Path) -> Path:
    """Send INFO and above to ``<directory>/.logs/shop_ledger.log``.

    A file handler attached earlier for another directory is closed and
    replaced, so the log always sits beside the workbook currently in use.
    Failure to create the file only produces a warning on stderr.
    """

    log_file = Path(directory).expanduser().resolve() / LOG_DIR_NAME / LOG_FILE_NAME
    for handler in list(log.handlers):
        if isinstance(handler, RotatingFileHandler):
            if Path(handler.baseFilename) == log_file:
                return log_file
            log.removeHandler(handler)
            handler.close()

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"Warning: unable to open ledger log file at '{log_file}': {exc}", file=sys.stderr)
        return log_file

    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(_FORMATTER)
    log.addHandler(file_handler)
    log.debug("Writing ledger log to '%s'", log_file)
    return log_file


log = _configure_logging()
