"""In-memory render job record."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from render_service.models.schemas import RenderParameters


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


# queued -> processing -> {done | error}
ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.DONE, JobStatus.ERROR},
    JobStatus.DONE: set(),
    JobStatus.ERROR: set(),
}


@dataclass
class RenderJob:
    """Render job owned by the scheduler.

    Only the worker executing the job mutates it; readers take snapshots.
    """

    id: str
    parameters: RenderParameters
    output_path: str
    status: JobStatus = JobStatus.QUEUED
    error: Optional[str] = None
    error_code: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # Pipeline modes tried, in order ("primary", "fallback")
    attempts: list = field(default_factory=list)
    # Temporary files created while executing; all removed at terminal state
    intermediates: list = field(default_factory=list)

    def transition(self, status: JobStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Job {self.id}: illegal transition {self.status.value} -> {status.value}")
        now = utcnow()
        self.status = status
        self.updated_at = now
        if status == JobStatus.PROCESSING:
            self.started_at = now
        elif status.is_terminal:
            self.completed_at = now

    def touch(self) -> None:
        self.updated_at = utcnow()

    def snapshot(self) -> dict:
        return {
            "job_id": self.id,
            "status": self.status.value,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }
