"""
Port advertisement file: logs/server-port.txt

Rules:
- exactly one daemon is authoritative for the file at a time
- the file is written once by a daemon at startup
- a daemon deletes it only if it still names that daemon's own port
- write and compare-and-delete run under a directory lock (os.mkdir is
  atomic), so an old daemon shutting down can't delete the
  advertisement of a new daemon that is starting up

Stale locks (owner process gone) are cleaned up using the PID in lock.meta.
"""

import json
import logging
import os
import time
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from outpost_forms.core.storage import atomic_write_text

logger = logging.getLogger(__name__)

# Lock directory owned by a dead process or older than this is stale.
STALE_LOCK_THRESHOLD_SECONDS = 60

LOCK_META_FILENAME = "lock.meta"
LOCK_RETRY_INTERVAL_SECONDS = 0.05
LOCK_MAX_RETRIES = 40

# =============================================================================
# Lock Management
# =============================================================================


def _lock_dir_for(port_file: Path) -> Path:
    return port_file.with_name(port_file.name + ".lock")


def _write_lock_meta(lock_dir: Path) -> None:
    """Record the lock owner (PID, created_at)."""
    meta_path = lock_dir / LOCK_META_FILENAME
    meta = {
        "pid": os.getpid(),
        "created_at": datetime.now(UTC).isoformat(),
    }
    try:
        meta_path.write_text(json.dumps(meta), encoding="utf-8")
    except OSError as e:
        logger.warning(f"Failed to write lock meta {meta_path}: {e}")


def _read_lock_meta(lock_dir: Path) -> dict | None:
    try:
        return json.loads((lock_dir / LOCK_META_FILENAME).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None


def _is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False


def _is_stale_lock(lock_dir: Path) -> bool:
    """
    Decide whether a lock directory was abandoned.

    1. meta with a PID: stale if that process is gone
    2. otherwise: stale if the directory is older than the threshold
    """
    meta = _read_lock_meta(lock_dir)
    if meta and meta.get("pid"):
        return not _is_process_alive(meta["pid"])

    try:
        age_seconds = time.time() - lock_dir.stat().st_mtime
        return age_seconds > STALE_LOCK_THRESHOLD_SECONDS
    except OSError:
        return False


def _cleanup_lock_dir(lock_dir: Path) -> None:
    meta_path = lock_dir / LOCK_META_FILENAME
    if meta_path.exists():
        try:
            meta_path.unlink()
        except OSError:
            pass
    os.rmdir(lock_dir)


@contextmanager
def port_file_lock(
    port_file: Path,
    max_retries: int = LOCK_MAX_RETRIES,
    interval: float = LOCK_RETRY_INTERVAL_SECONDS,
) -> Generator[Path, None, None]:
    """
    Hold the port file's lock.

    Usage:
        with port_file_lock(paths.port_file):
            # read / write / delete the port file

    Raises:
        TimeoutError: the lock couldn't be acquired
    """
    lock_dir = _lock_dir_for(port_file)
    lock_dir.parent.mkdir(parents=True, exist_ok=True)

    acquired = False
    for attempt in range(max_retries):
        try:
            os.mkdir(lock_dir)
            acquired = True
            _write_lock_meta(lock_dir)
            break
        except FileExistsError:
            if attempt == 0 and _is_stale_lock(lock_dir):
                logger.warning(f"Cleaning up stale lock {lock_dir}")
                try:
                    _cleanup_lock_dir(lock_dir)
                    continue
                except OSError:
                    pass
            time.sleep(interval)

    if not acquired:
        raise TimeoutError(
            f"Couldn't lock {port_file} after {max_retries * interval:.1f} seconds"
        )

    try:
        yield lock_dir
    finally:
        try:
            _cleanup_lock_dir(lock_dir)
        except OSError as e:
            logger.warning(
                f"Lock release failed for {port_file}: {e}. "
                f"Manual cleanup may be required: rmdir {lock_dir}"
            )


# =============================================================================
# Port File Operations
# =============================================================================


def read_port(port_file: Path) -> int | None:
    """
    The advertised port, or None if there is no (valid) advertisement.
    """
    try:
        return int(port_file.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def advertise_port(port_file: Path, port: int) -> None:
    """Replace the advertisement with this daemon's port."""
    with port_file_lock(port_file):
        atomic_write_text(port_file, str(port))
    logger.info(f"Advertised port {port} in {port_file}")


def release_port(port_file: Path, port: int) -> bool:
    """
    Delete the advertisement if, and only if, it names port.

    Returns:
        True if the file was deleted
    """
    try:
        with port_file_lock(port_file):
            if read_port(port_file) != port:
                logger.info(f"{port_file} doesn't name port {port}; leaving it alone")
                return False
            port_file.unlink()
    except (OSError, TimeoutError) as e:
        logger.warning(f"Failed to release {port_file}: {e}")
        return False
    logger.info(f"Deleted {port_file}")
    return True


def owns_port_file(port_file: Path, port: int) -> bool:
    """True if the advertisement names port (this daemon is current)."""
    return read_port(port_file) == port
