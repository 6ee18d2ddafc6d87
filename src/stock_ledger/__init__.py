"""Activity ledger and stock consistency engine.

The package keeps a product's cached stock in line with the activity ledger
and derives financial aggregates from that ledger. A single package logger is
configured on import and shared by every module through ``log``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("STOCK_LEDGER_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "stock_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
DEFAULT_LOG_LEVEL = os.environ.get("STOCK_LEDGER_LOG_LEVEL", "INFO")


def _configure_logging() -> logging.Logger:
    """Attach a rotating file handler and a stderr handler to the package logger.

    The console only receives warnings and above so that command-line output
    stays readable, while the log file keeps the full informational trail of
    ledger writes and compensations.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, DEFAULT_LOG_LEVEL.upper(), logging.INFO))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def set_log_level(level: str) -> None:
    """Change the package logger threshold, e.g. from a ``--verbose`` flag."""

    log.setLevel(getattr(logging, level.upper(), logging.INFO))


log = _configure_logging()
log.debug("Logger initialized for the 'stock_ledger' package.")
