"""
Log file setup.

Each process logs to logs/<name>.log with daily rotation; 7 days are kept.
The daemon's name includes its port (server-9001.log) so the client's
stop verb can find every daemon that may still be running.
"""

import logging
import logging.handlers
from pathlib import Path

from outpost_forms.domain.constants import LOG_RETENTION_DAYS

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def log_file_path(log_dir: Path, name: str) -> Path:
    return log_dir / f"{name}.log"


def configure_logging(
    log_dir: Path,
    name: str,
    level: int = logging.INFO,
) -> Path:
    """
    Send the root logger to a rotating file in log_dir.

    Calling it again (e.g. once the daemon knows its port) replaces the
    handler installed by the previous call.

    Args:
        log_dir: folder for log files (created if needed)
        name: file name without ".log"
        level: root logger level

    Returns:
        the log file path
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_file_path(log_dir, name)

    handler = logging.handlers.TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=LOG_RETENTION_DAYS,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.set_name("outpost_forms")

    root = logging.getLogger()
    for old in list(root.handlers):
        if old.get_name() == "outpost_forms":
            root.removeHandler(old)
            old.close()
    root.addHandler(handler)
    root.setLevel(level)
    return path
