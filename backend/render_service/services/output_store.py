"""Finished render artifacts on disk, addressed by job id."""

import logging
import re
import time
from pathlib import Path
from typing import Optional

from render_service.config import settings
from render_service.services.cleanup import remove_path

logger = logging.getLogger(__name__)

JOB_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
OUTPUT_SUFFIX = ".mp4"


class OutputStore:
    """Maps job ids to output paths and expires old artifacts."""

    def __init__(self, output_dir: str = settings.OUTPUT_DIR):
        self.output_dir = Path(output_dir)

    def is_valid_id(self, job_id: str) -> bool:
        return bool(JOB_ID_PATTERN.match(job_id or ""))

    def path_for(self, job_id: str) -> str:
        """
        Deterministic output path of a job.

        Args:
            job_id: Job identifier (32 hex chars)

        Returns:
            Absolute path inside the output directory
        """
        if not self.is_valid_id(job_id):
            raise ValueError("Invalid job id")
        return str(self.output_dir / f"{job_id}{OUTPUT_SUFFIX}")

    def existing(self, job_id: str) -> Optional[str]:
        """Path of a non-empty artifact for job_id, if one is on disk."""
        if not self.is_valid_id(job_id):
            return None
        path = Path(self.path_for(job_id))
        try:
            if path.is_file() and path.stat().st_size > 0:
                return str(path)
        except OSError:
            return None
        return None

    def delete(self, job_id: str) -> bool:
        if not self.is_valid_id(job_id):
            return False
        return remove_path(self.path_for(job_id))

    def sweep_expired(self, ttl: float, now: Optional[float] = None) -> int:
        """
        Remove artifacts older than ttl by modification time.

        Covers files whose job record is gone, e.g. after a restart.

        Returns:
            Number of files removed
        """
        now = now if now is not None else time.time()
        removed = 0
        if not self.output_dir.exists():
            return 0
        for item in self.output_dir.iterdir():
            if not item.is_file() or item.suffix != OUTPUT_SUFFIX:
                continue
            try:
                age = now - item.stat().st_mtime
            except OSError:
                continue
            if age > ttl and remove_path(str(item)):
                removed += 1
                logger.info(f"Expired output {item.name} ({age:.0f}s old)")
        return removed
