"""Best-effort removal of temporary job files."""

import logging
import shutil
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


def remove_path(path: str) -> bool:
    """
    Remove a file or directory, logging instead of raising.

    Args:
        path: File or directory to remove

    Returns:
        True if nothing remains at path
    """
    target = Path(path)
    try:
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        else:
            target.unlink(missing_ok=True)
        return True
    except OSError as e:
        logger.warning(f"Cleanup of {path} failed: {e}")
        return False


class CleanupScope:
    """
    Independent release actions run when a job reaches a terminal state.

    Each release is attempted even if an earlier one fails; failures are
    logged and never raised, so they cannot replace the job's own outcome.
    """

    def __init__(self, label: str = "job"):
        self.label = label
        self._releases: List[Tuple[str, Callable[[], object]]] = []
        self.paths: List[str] = []
        self.released = False

    def track(self, path: str) -> str:
        """Register a path for removal and return it."""
        self.paths.append(path)
        self._releases.append((path, lambda: remove_path(path)))
        return path

    def workspace(self, root: str, name: str) -> Path:
        """Create a scratch directory under root, removed on release."""
        directory = Path(root) / name
        directory.mkdir(parents=True, exist_ok=True)
        self.track(str(directory))
        return directory

    def release(self) -> int:
        """Run every release in reverse order; returns the number that failed."""
        failures = 0
        for name, action in reversed(self._releases):
            try:
                if action() is False:
                    failures += 1
            except Exception as e:
                failures += 1
                logger.warning(f"Cleanup of {name} for {self.label} raised: {e}")
        self._releases.clear()
        self.released = True
        if failures:
            logger.warning(f"Cleanup for {self.label} finished with {failures} failure(s)")
        else:
            logger.debug(f"Cleanup for {self.label} complete")
        return failures

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def sweep_stale(directory: str, max_age: float, now: Optional[float] = None) -> int:
    """
    Remove entries of directory not modified for max_age seconds.

    Catches scratch files whose owner never got to release them.

    Returns:
        Number of entries removed
    """
    root = Path(directory)
    if not root.is_dir():
        return 0
    now = now if now is not None else time.time()
    removed = 0
    for item in root.iterdir():
        try:
            age = now - item.stat().st_mtime
        except OSError:
            continue
        if age > max_age and remove_path(str(item)):
            removed += 1
            logger.info(f"Removed stale temp entry {item.name} ({age:.0f}s old)")
    return removed
