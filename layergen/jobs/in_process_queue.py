"""In-process job queue using asyncio.

Runs one generation job at a time in a background task; the job itself fans
out over a thread pool inside the controller. No external dependencies
(Redis, Celery) needed.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from layergen.errors import GenerationCancelledError
from layergen.jobs.controller import JobController, USER_MESSAGES
from layergen.jobs.dispatcher import JobDispatcher
from layergen.jobs.models import JobRecord, JobStatus
from layergen.jobs.registry import JobRegistry

logger = logging.getLogger(__name__)


class InProcessQueue(JobDispatcher):
    """Local async job queue. Processes jobs one at a time via asyncio."""

    def __init__(self, controller: JobController, registry: Optional[JobRegistry] = None):
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._controller = controller
        self._registry = registry or controller.registry
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def submit(self, job: JobRecord) -> str:
        self._registry.add(job)
        await self._queue.put(job.id)
        return job.id

    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        return self._registry.get(job_id)

    async def cancel(self, job_id: str) -> bool:
        job = self._registry.get(job_id)
        if job is None or job.status.is_terminal:
            return False

        if job.status == JobStatus.PENDING:
            error = GenerationCancelledError()
            self._controller.store.remove_job_dir(job_id)
            self._registry.update(
                job_id,
                status=JobStatus.CANCELLED,
                message=USER_MESSAGES[error.kind],
                detail="Cancelled before generation started",
                error=error.to_report(),
                completed_at=datetime.utcnow(),
                cleanup_after=datetime.utcnow(),
            )
            return True

        return self._controller.cancel(job_id)

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _worker_loop(self) -> None:
        """Process jobs one at a time from the queue."""
        while self._running:
            try:
                job_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            job = self._registry.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                continue

            # Generation is CPU and disk bound; keep it off the event loop
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._controller.run, job)
            except Exception:
                logger.exception(f"Worker crashed while running job {job_id}")
                self._registry.update(
                    job_id,
                    status=JobStatus.FAILED,
                    message="Generation failed",
                    completed_at=datetime.utcnow(),
                )
