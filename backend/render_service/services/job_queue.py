"""Render job scheduler: in-memory index, bounded admission, retention."""
import asyncio
import logging
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Deque, Dict, Optional

from render_service.config import settings
from render_service.exceptions import (
    JobTimeout,
    RenderServiceError,
    SchedulerBusy,
    ValidationError,
)
from render_service.models.job import JobStatus, RenderJob
from render_service.models.schemas import RenderParameters
from render_service.services.cleanup import CleanupScope, sweep_stale
from render_service.services.output_store import OutputStore
from render_service.services.render_runner import RenderRunner, render_runner

logger = logging.getLogger(__name__)


@dataclass
class OutputLookup:
    """Answer of fetch_output: exactly one of path / error applies."""

    state: str  # "ready", "not_ready", "failed", "missing"
    path: Optional[str] = None
    error: Optional[str] = None
    status: Optional[str] = None


class JobScheduler:
    """
    Owns every render job from submission to eviction.

    All state lives on the event loop: the dispatcher admits queued jobs in
    submission order while fewer than max_running are in flight, and each
    admitted job is mutated only by its own worker task.
    """

    def __init__(
        self,
        runner: Optional[RenderRunner] = None,
        output_store: Optional[OutputStore] = None,
        max_running: int = settings.MAX_RUNNING,
        job_timeout: float = settings.JOB_TIMEOUT,
        heartbeat_interval: float = settings.HEARTBEAT_INTERVAL,
        output_ttl: float = settings.OUTPUT_TTL,
        error_ttl: float = settings.ERROR_TTL,
        sweep_interval: float = settings.SWEEP_INTERVAL,
    ):
        self.runner = runner or render_runner
        self.output_store = output_store or OutputStore()
        self.max_running = max(1, max_running)
        self.job_timeout = job_timeout
        self.heartbeat_interval = heartbeat_interval
        self.output_ttl = output_ttl
        self.error_ttl = error_ttl
        self.sweep_interval = sweep_interval

        self.jobs: Dict[str, RenderJob] = {}
        self.pending: Deque[str] = deque()
        self.in_flight = 0
        self.peak_in_flight = 0
        self.worker_tasks: Dict[str, asyncio.Task] = {}
        self.running = False
        self.websocket_manager = None
        self._wakeup: Optional[asyncio.Event] = None
        self._dispatcher_task: Optional[asyncio.Task] = None
        self._sweeper_task: Optional[asyncio.Task] = None

    def set_websocket_manager(self, ws_manager):
        """Set WebSocket manager for broadcasting updates."""
        self.websocket_manager = ws_manager

    async def _broadcast(self, message: dict):
        if self.websocket_manager:
            await self.websocket_manager.broadcast(message)

    def _wake(self):
        if self._wakeup is not None:
            self._wakeup.set()

    # ------------------------------------------------------------------
    # Submission and admission
    # ------------------------------------------------------------------

    async def submit(self, parameters: RenderParameters) -> RenderJob:
        """
        Queue a render and return immediately.

        Args:
            parameters: Validated request snapshot

        Returns:
            The queued job

        Raises:
            ValidationError: required sources are missing
        """
        missing = [name for name in ("video_url", "audio_url") if not getattr(parameters, name, None)]
        if missing:
            raise ValidationError(f"{' and '.join(missing)} required")

        job_id = uuid.uuid4().hex
        job = RenderJob(
            id=job_id,
            parameters=parameters,
            output_path=self.output_store.path_for(job_id),
        )
        self.jobs[job_id] = job
        self.pending.append(job_id)
        logger.info(f"Job {job_id} queued. Queue size: {len(self.pending)}")

        await self._broadcast({"type": "job_status", "job_id": job_id, "status": job.status.value, "error": None})
        await self._broadcast(self._queue_message())
        self._wake()
        return job

    def admit_next(self) -> Optional[RenderJob]:
        """Move the oldest queued job to processing if a slot is free."""
        if self.in_flight >= self.max_running:
            return None
        while self.pending:
            job = self.jobs.get(self.pending.popleft())
            if job is None or job.status != JobStatus.QUEUED:
                continue
            job.transition(JobStatus.PROCESSING)
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            return job
        return None

    def complete(self, job: RenderJob):
        """Release the slot held by a finished job and re-run admission."""
        self.in_flight -= 1
        self.worker_tasks.pop(job.id, None)
        self._wake()

    @asynccontextmanager
    async def reserve_slot(self, label: str = "request"):
        """
        Hold a concurrency slot for synchronous work.

        Raises:
            SchedulerBusy: no slot is free, or queued jobs are waiting for one
        """
        if self.in_flight >= self.max_running or self.pending:
            raise SchedulerBusy(f"busy: {self.in_flight}/{self.max_running} running, {len(self.pending)} queued")
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        logger.info(f"Slot reserved for {label}")
        try:
            yield
        finally:
            self.in_flight -= 1
            self._wake()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_worker(self):
        """Start dispatcher and retention sweeper."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.running = True
        self._wakeup = asyncio.Event()
        self._wakeup.set()
        self._dispatcher_task = asyncio.create_task(self._dispatch_loop())
        self._sweeper_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Job scheduler started (max_running={self.max_running})")

    async def stop_worker(self):
        """Stop background tasks; running jobs are cancelled and cleaned up."""
        if not self.running:
            return

        self.running = False
        tasks = [t for t in (self._dispatcher_task, self._sweeper_task) if t]
        tasks += list(self.worker_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._dispatcher_task = None
        self._sweeper_task = None
        logger.info("Job scheduler stopped")

    async def _dispatch_loop(self):
        """Admit queued jobs whenever a slot frees up."""
        logger.info("Dispatcher started")
        while self.running:
            try:
                await self._wakeup.wait()
                self._wakeup.clear()
                admitted = False
                while True:
                    job = self.admit_next()
                    if job is None:
                        break
                    admitted = True
                    self.worker_tasks[job.id] = asyncio.create_task(self._run_job(job))
                if admitted:
                    await self._broadcast(self._queue_message())
            except asyncio.CancelledError:
                logger.info("Dispatcher cancelled")
                break
            except Exception as e:
                logger.error(f"Error in dispatcher loop: {e}", exc_info=True)

    async def _heartbeat(self, job: RenderJob):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            job.touch()
            await self._broadcast({"type": "job_heartbeat", "job_id": job.id, "updated_at": job.updated_at.isoformat()})

    async def _run_job(self, job: RenderJob):
        """
        Execute one admitted job through to a terminal state.

        Args:
            job: Job already in processing state
        """
        logger.info(f"Processing job {job.id}")
        await self._broadcast({"type": "job_status", "job_id": job.id, "status": job.status.value, "error": None})

        scope = CleanupScope(label=f"job {job.id}")
        heartbeat = asyncio.create_task(self._heartbeat(job), name=f"heartbeat-{job.id}")
        failure: Optional[RenderServiceError] = None
        cancelled = False
        try:
            await asyncio.wait_for(
                self.runner.render(
                    job.parameters,
                    job.output_path,
                    scope,
                    workspace_name=job.id,
                    on_attempt=job.attempts.append,
                ),
                timeout=self.job_timeout,
            )
        except asyncio.TimeoutError:
            failure = JobTimeout(f"job did not finish within {self.job_timeout:g}s")
        except RenderServiceError as e:
            failure = e
        except asyncio.CancelledError:
            cancelled = True
            failure = RenderServiceError("job cancelled by service shutdown")
        except Exception as e:
            logger.error(f"Error processing job {job.id}: {e}", exc_info=True)
            failure = RenderServiceError(str(e))
        finally:
            heartbeat.cancel()
            # Intermediates go before the terminal state becomes visible
            job.intermediates = list(scope.paths)
            scope.release()
            if failure is not None:
                self.output_store.delete(job.id)
                job.error = failure.describe()
                job.error_code = failure.code
                job.transition(JobStatus.ERROR)
                logger.error(f"Job {job.id} failed: {failure.code}: {failure.message}")
            else:
                job.transition(JobStatus.DONE)
                logger.info(f"Job {job.id} finished with status: done (attempts: {', '.join(job.attempts)})")
            self.complete(job)
            await asyncio.gather(heartbeat, return_exceptions=True)

        if not cancelled:
            await self._broadcast({"type": "job_status", "job_id": job.id, "status": job.status.value, "error": job.error})
            await self._broadcast(self._queue_message())
        else:
            raise asyncio.CancelledError()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[RenderJob]:
        return self.jobs.get(job_id)

    def query(self, job_id: str) -> Optional[dict]:
        """Status snapshot; None when the id is unknown. Never raises."""
        job = self.jobs.get(job_id)
        if job is not None:
            return job.snapshot()
        path = self.output_store.existing(job_id)
        if path is None or self._file_expired(path):
            return None
        # Record evicted (e.g. restart) but the artifact survived
        completed = datetime.fromtimestamp(_mtime(path), tz=timezone.utc)
        return {
            "job_id": job_id,
            "status": JobStatus.DONE.value,
            "error": None,
            "created_at": completed,
            "updated_at": completed,
            "completed_at": completed,
        }

    def list_jobs(self, status: Optional[str] = None) -> list:
        jobs = sorted(self.jobs.values(), key=lambda j: j.created_at, reverse=True)
        return [j.snapshot() for j in jobs if status is None or j.status.value == status]

    def fetch_output(self, job_id: str, now: Optional[datetime] = None) -> OutputLookup:
        """Locate the artifact of a job. Never raises."""
        now = now or datetime.now(timezone.utc)
        job = self.jobs.get(job_id)
        if job is None:
            path = self.output_store.existing(job_id)
            if path is None or self._file_expired(path):
                return OutputLookup(state="missing")
            return OutputLookup(state="ready", path=path, status=JobStatus.DONE.value)

        if job.status == JobStatus.ERROR:
            return OutputLookup(state="failed", error=job.error, status=job.status.value)
        if job.status != JobStatus.DONE:
            return OutputLookup(state="not_ready", status=job.status.value)
        if self._expired(job, now):
            self._evict(job)
            return OutputLookup(state="missing")
        path = self.output_store.existing(job_id)
        if path is None:
            return OutputLookup(state="missing")
        return OutputLookup(state="ready", path=path, status=job.status.value)

    def get_queue_status(self) -> dict:
        """Get current queue status."""
        return {
            "queue_size": len(self.pending),
            "running": self.in_flight,
            "max_running": self.max_running,
            "indexed_jobs": len(self.jobs),
            "active_job_ids": list(self.worker_tasks),
            "worker_running": self.running,
        }

    def _queue_message(self) -> dict:
        return {
            "type": "queue_update",
            "queue_size": len(self.pending),
            "running": self.in_flight,
        }

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def _expired(self, job: RenderJob, now: datetime) -> bool:
        if not job.status.is_terminal or job.completed_at is None:
            return False
        ttl = self.output_ttl if job.status == JobStatus.DONE else self.error_ttl
        return now - job.completed_at > timedelta(seconds=ttl)

    def _file_expired(self, path: str) -> bool:
        age = datetime.now(timezone.utc).timestamp() - _mtime(path)
        return age > self.output_ttl

    def _evict(self, job: RenderJob):
        if job.status == JobStatus.DONE:
            self.output_store.delete(job.id)
        self.jobs.pop(job.id, None)
        logger.info(f"Evicted job {job.id} ({job.status.value})")

    def expire(self, now: Optional[datetime] = None) -> int:
        """
        Evict terminal jobs past their retention window.

        Done jobs lose their artifact after output_ttl; error jobs are
        dropped from the index after error_ttl. Orphaned artifacts on disk
        are expired by age, as are abandoned scratch directories.

        Returns:
            Number of evicted job records
        """
        now = now or datetime.now(timezone.utc)
        expired = [job for job in self.jobs.values() if self._expired(job, now)]
        for job in expired:
            self._evict(job)
        self.output_store.sweep_expired(self.output_ttl, now=now.timestamp())
        # Scratch space older than any job may legitimately run was abandoned
        sweep_stale(self.runner.temp_dir, self.job_timeout * 2, now=now.timestamp())
        return len(expired)

    async def _sweep_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.sweep_interval)
                self.expire()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in retention sweep: {e}", exc_info=True)


def _mtime(path: str) -> float:
    try:
        return Path(path).stat().st_mtime
    except OSError:
        return 0.0


# Global scheduler instance
job_queue = JobScheduler()
