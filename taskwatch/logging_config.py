"""Logging setup for taskwatch.

Two outputs:
- ``logs/local-YYYY-MM-DD.log``: the ``taskwatch`` logger hierarchy
- ``logs/sync-events-YYYY-MM-DD.log``: one line per push/pull pass, for
  reviewing sync activity without the debug noise
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from taskwatch.utils import get_taskwatch_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir() -> Path:
    log_dir = get_taskwatch_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_taskwatch_logging(owner_id: str = "default", level: str = "INFO") -> logging.Logger:
    """Configure the ``taskwatch`` logger.

    Args:
        owner_id: Owner the process runs for; recorded in the first log line.
        level: Level name, case-insensitive. Unknown names fall back to INFO.
            DEBUG additionally logs to the console.

    Returns:
        The configured ``taskwatch`` logger. Calling again does not add
        duplicate handlers.
    """
    logger = logging.getLogger("taskwatch")
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        log_file = _log_dir() / f"local-{_today()}.log"
        handler = logging.FileHandler(str(log_file), encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.debug("Logging initialised for owner=%s", owner_id)

    if resolved == logging.DEBUG and not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console)

    return logger


def log_sync_event(owner_id: str, direction: str, count: int, errors: int = 0) -> None:
    """Append a sync event line.

    Best effort: a log write failure must never break a sync pass.
    """
    stamp = datetime.now(timezone.utc).isoformat()
    line = f"{stamp} | sync | owner={owner_id} | direction={direction}, count={count}, errors={errors}\n"
    try:
        with open(_log_dir() / f"sync-events-{_today()}.log", "a", encoding="utf-8") as f:
            f.write(line)
    except OSError as e:
        logging.getLogger(__name__).debug(f"Failed to write sync event: {e}")
