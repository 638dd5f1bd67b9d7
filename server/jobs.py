"""Background work queue for contextdocs.

Suggestion generation triggered by context updates runs here, off the
request path, on a bounded in-process queue. APScheduler drives the
periodic maintenance jobs.
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional
from dataclasses import dataclass, asdict

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR

from observability.prometheus_metrics import error_count, job_queue_depth
from services.shared.errors import QueueFullError

logger = logging.getLogger(__name__)

JobHandler = Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


class JobStatus(str, Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class JobRecord:
    """Job record for tracking job state."""
    id: str
    type: str
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    parameters: Dict[str, Any] = None
    logs: List[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.parameters is None:
            self.parameters = {}
        if self.logs is None:
            self.logs = []

    def add_log(self, message: str):
        """Add a log message with timestamp."""
        self.logs.append(f"[{datetime.now().isoformat()}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        for name in ['created_at', 'started_at', 'completed_at']:
            if data[name]:
                data[name] = data[name].isoformat()
        return data


class JobManager:
    """Runs queued jobs on a fixed set of worker tasks."""

    def __init__(self, max_queue_size: int = 100, workers: int = 2, history_size: int = 500):
        self.max_queue_size = max_queue_size
        self.worker_count = workers
        self.job_handlers: Dict[str, JobHandler] = {}
        self.queue: Optional[asyncio.Queue] = None
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._workers: List[asyncio.Task] = []
        self._jobs: Dict[str, JobRecord] = {}
        self._history: Deque[str] = deque(maxlen=history_size)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the worker tasks and the maintenance scheduler."""
        if self._running:
            return
        self.queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"contextdocs-worker-{i}")
            for i in range(self.worker_count)
        ]

        self.scheduler = AsyncIOScheduler(job_defaults={'coalesce': True, 'max_instances': 1})
        self.scheduler.add_listener(self._scheduled_job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._scheduled_job_error, EVENT_JOB_ERROR)
        self.scheduler.start()

        self._running = True
        logger.info(f"Job manager started with {self.worker_count} workers")

    async def shutdown(self):
        self._running = False
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Job manager shutdown complete")

    def register_handler(self, job_type: str, handler: JobHandler):
        """Register a job handler coroutine function."""
        self.job_handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    def enqueue_job(self, job_type: str, parameters: Dict[str, Any] = None) -> str:
        """Queue a job without waiting; raises QueueFullError at capacity."""
        if not self._running:
            raise RuntimeError("Job manager not started")
        if job_type not in self.job_handlers:
            raise ValueError(f"No handler registered for job type: {job_type}")

        job = JobRecord(
            id=str(uuid.uuid4()),
            type=job_type,
            status=JobStatus.QUEUED,
            created_at=datetime.now(),
            parameters=parameters or {}
        )
        try:
            self.queue.put_nowait(job)
        except asyncio.QueueFull:
            error_count.labels(error_type="queue_full", component="jobs").inc()
            raise QueueFullError(f"Job queue full ({self.max_queue_size}), dropping {job_type}")

        self._remember(job)
        job_queue_depth.set(self.queue.qsize())
        logger.debug(f"Enqueued job {job.id} of type {job_type}")
        return job.id

    def schedule_interval(self, func: Callable[[], Any], seconds: int, job_id: str) -> str:
        """Run ``func`` every ``seconds`` on the scheduler."""
        if self.scheduler is None:
            raise RuntimeError("Job manager not started")
        self.scheduler.add_job(func, 'interval', seconds=seconds, id=job_id, replace_existing=True)
        logger.info(f"Scheduled {job_id} every {seconds}s")
        return job_id

    def get_job_status(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[JobRecord]:
        """Most recent jobs first, optionally filtered by status."""
        jobs = []
        for job_id in reversed(self._history):
            job = self._jobs[job_id]
            if status is None or job.status == status:
                jobs.append(job)
            if len(jobs) >= limit:
                break
        return jobs

    async def join(self):
        """Wait until every queued job has been processed."""
        if self.queue is not None:
            await self.queue.join()

    def _remember(self, job: JobRecord):
        if len(self._history) == self._history.maxlen:
            self._jobs.pop(self._history[0], None)
        self._history.append(job.id)
        self._jobs[job.id] = job

    async def _worker(self, index: int):
        while True:
            job = await self.queue.get()
            job_queue_depth.set(self.queue.qsize())
            try:
                await self._execute_job(job)
            finally:
                self.queue.task_done()

    async def _execute_job(self, job: JobRecord):
        handler = self.job_handlers[job.type]
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now()
        job.add_log("Job started")
        try:
            job.result = await handler(job.parameters)
            job.status = JobStatus.DONE
            job.add_log("Job completed successfully")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            job.add_log(f"Job failed: {e}")
            error_count.labels(error_type="job_failed", component="jobs").inc()
            logger.error(f"Job {job.id} ({job.type}) failed: {e}", exc_info=True)
        finally:
            job.completed_at = datetime.now()

    def _scheduled_job_executed(self, event):
        logger.debug(f"Scheduled job {event.job_id} executed")

    def _scheduled_job_error(self, event):
        error_count.labels(error_type="scheduled_job_failed", component="jobs").inc()
        logger.error(f"Scheduled job {event.job_id} failed: {event.exception}")
