"""
Retention policy enforcement for backup artifacts.

Keeps the N most recently modified files of each artifact class in a plan
directory:
- archives: *.gz and *.gz.encrypted
- logs: *.log

Also provides the daily cleanup of stale files left in the temp directory.
"""

import logging
import os
import time
from datetime import timedelta
from pathlib import Path
from typing import Iterable, List, Tuple

from .errors import RetentionFailed

logger = logging.getLogger(__name__)

ARCHIVE_PATTERNS = ('*.gz', '*.gz.encrypted')
LOG_PATTERNS = ('*.log',)


def _collect(directory: Path, patterns: Iterable[str]) -> List[Path]:
    """List files matching any pattern, newest first."""
    files = {}
    for pattern in patterns:
        for path in directory.glob(pattern):
            if path.is_file():
                files[path] = path.stat().st_mtime
    return sorted(files, key=lambda p: files[p], reverse=True)


def _prune(directory: Path, patterns: Tuple[str, ...], retention: int) -> Tuple[List[str], List[str]]:
    """
    Delete files of one class beyond the retention count.

    Returns:
        Tuple of (deleted paths, paths that could not be deleted)
    """
    deleted, failed = [], []

    try:
        files = _collect(directory, patterns)
    except OSError as e:
        logger.error(f"Listing {patterns} in {directory} failed: {e}")
        return deleted, [str(directory)]

    for path in files[retention:]:
        try:
            path.unlink()
            deleted.append(str(path))
            logger.debug(f"Retention removed {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Retention failed to remove {path}: {e}")
            failed.append(str(path))

    return deleted, failed


def apply_retention(directory: str, retention: int) -> List[str]:
    """
    Enforce a count-based retention policy on a plan directory.

    Archives and logs are pruned independently; a failure in one class does
    not prevent the other class from being pruned.

    Args:
        directory: Plan directory
        retention: Number of files to keep per class (must be positive)

    Returns:
        List of deleted file paths

    Raises:
        ValueError: If retention is not positive
        RetentionFailed: If any file could not be deleted
    """
    if retention <= 0:
        raise ValueError(f"Retention must be positive, got {retention}")

    path = Path(directory)
    deleted, failed = [], []

    for patterns in (ARCHIVE_PATTERNS, LOG_PATTERNS):
        class_deleted, class_failed = _prune(path, patterns, retention)
        deleted.extend(class_deleted)
        failed.extend(class_failed)

    if failed:
        raise RetentionFailed(
            f"Removing old files from {directory} failed: {', '.join(failed)}",
            failed_paths=failed,
        )

    logger.info(f"Applied retention {retention} to {directory}, removed {len(deleted)} files")
    return deleted


def cleanup_temp_dir(directory: str, keep: Iterable[str] = (),
                     max_age: timedelta = timedelta(days=1)) -> List[str]:
    """
    Remove stale files from the temp directory.

    Args:
        directory: Temp directory to clean
        keep: File names that are never removed, along with any file whose
            name starts with one of them (e.g. the state database and its
            -journal and -wal siblings)
        max_age: Files last modified longer ago than this are removed

    Returns:
        List of deleted file paths

    Raises:
        RetentionFailed: If the directory cannot be listed or a file cannot be removed
    """
    keep = tuple(keep)
    cutoff = time.time() - max_age.total_seconds()
    deleted, failed = [], []

    try:
        entries = list(os.scandir(directory))
    except FileNotFoundError:
        return deleted
    except OSError as e:
        raise RetentionFailed(f"{directory} cleanup failed: {e}") from e

    for entry in entries:
        if (keep and entry.name.startswith(keep)) or not entry.is_file(follow_symlinks=False):
            continue
        try:
            if entry.stat(follow_symlinks=False).st_mtime >= cutoff:
                continue
            os.remove(entry.path)
            deleted.append(entry.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Temp cleanup failed to remove {entry.path}: {e}")
            failed.append(entry.path)

    if failed:
        raise RetentionFailed(f"{directory} cleanup failed: {', '.join(failed)}", failed_paths=failed)

    if deleted:
        logger.info(f"Temp cleanup removed {len(deleted)} files from {directory}")
    return deleted
