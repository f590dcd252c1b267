"""
File storage helpers: atomic writes and age-based cleanup.

Snapshot files are rewritten while a newer daemon may be reading the same
folder, so writes go temp → rename and never leave a half-written file.

Best-effort durability:
- fsync the file, then the directory entry, where the OS allows it
- fsync failure is logged and the write still counts
"""

import json
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# =============================================================================
# Atomic Write
# =============================================================================


def _fsync_dir(dir_path: Path) -> None:
    """
    fsync a directory so a rename into it survives power loss.

    Not every OS/filesystem supports this (O_DIRECTORY on Windows).
    """
    try:
        dir_fd = os.open(str(dir_path), os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except (OSError, AttributeError) as e:
        logger.debug(f"Directory fsync failed for {dir_path}: {e}")


def atomic_write_text(path: Path, text: str) -> None:
    """
    Write text so readers see either the old or the new content.

    Args:
        path: destination file
        text: content (UTF-8)
    """
    dir_path = path.parent
    dir_path.mkdir(parents=True, exist_ok=True)

    temp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=dir_path,
            prefix=".",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
            newline="",
        ) as f:
            f.write(text)
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError as e:
                logger.warning(
                    f"File fsync failed for {path}: {e}. "
                    f"Data may not be durable on power loss."
                )
            temp_path = Path(f.name)

        os.replace(temp_path, path)
        _fsync_dir(dir_path)

    except Exception:
        if temp_path and temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def atomic_write_json(path: Path, data: dict) -> None:
    """Atomic JSON write (see atomic_write_text)."""
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False))


def read_json(path: Path) -> dict[str, Any]:
    """
    Load a JSON file.

    Raises:
        OSError: file missing or unreadable
        json.JSONDecodeError: corrupt file
    """
    data: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
    return data


# =============================================================================
# Cleanup
# =============================================================================


def delete_old_files(
    dir_path: Path,
    pattern: str | re.Pattern[str],
    max_age_seconds: float,
    now: float | None = None,
) -> list[Path]:
    """
    Delete files whose names match pattern and are older than max_age_seconds.

    A negative max_age_seconds deletes every matching file. Failures are
    logged, never raised: nobody is waiting for the result.

    Args:
        dir_path: folder to scan (missing folder → nothing to do)
        pattern: regex matched against the file name
        max_age_seconds: age limit, by modification time
        now: current time (time.time() if None)

    Returns:
        deleted paths
    """
    if not dir_path.is_dir():
        return []

    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    deadline = (time.time() if now is None else now) - max_age_seconds
    deleted: list[Path] = []

    try:
        candidates = [p for p in dir_path.iterdir() if regex.search(p.name)]
    except OSError as e:
        logger.warning(f"Failed to list {dir_path}: {e}")
        return deleted

    for path in candidates:
        try:
            if path.is_file() and path.stat().st_mtime < deadline:
                path.unlink()
                deleted.append(path)
                logger.info(f"Deleted {path}")
        except OSError as e:
            logger.warning(f"Failed to delete {path}: {e}")

    return deleted


def unlink_quietly(path: Path) -> bool:
    """
    Delete a file if it exists.

    Returns:
        True if a file was deleted
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Failed to delete {path}: {e}")
        return False
    logger.info(f"Deleted {path}")
    return True
