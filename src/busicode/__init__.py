"""BusiCode: ledger and settlement engine for a classroom economy.

Importing the package configures the shared ``log`` used by every module.
Set ``BUSICODE_LOG_DIR`` to move the rotating log file away from the project
checkout and ``BUSICODE_LOG_LEVEL`` (for example ``DEBUG``) to change how
much the ledger operations report.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("BUSICODE_LOG_DIR") or PROJECT_ROOT / ".logs")
LOG_FILE = LOG_DIR / "busicode.log"


def _log_level(raw: str | None, default: int = logging.INFO) -> int:
    """Translate a level name such as ``"debug"`` into a ``logging`` level."""

    if not raw:
        return default
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else default


def _configure_logging() -> logging.Logger:
    """Attach the rotating ledger log and the stderr console to ``busicode``."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _log_level(os.environ.get("BUSICODE_LOG_LEVEL"))
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: BusiCode ledger log unavailable at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    # Balance and ledger warnings reach the console; the file keeps the full trail.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(max(level, logging.WARNING))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("BusiCode ledger logging started (level=%s).", logging.getLevelName(log.level))
