"""Background reaping of finished and abandoned jobs."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from layergen.config import Settings, settings as default_settings
from layergen.jobs.controller import JobController
from layergen.jobs.models import JobStatus
from layergen.jobs.registry import JobRegistry
from layergen.storage.temp_results import TempResultStore

logger = logging.getLogger(__name__)


class JobSweeper:
    """Removes job trees whose retention has passed, and orphaned jobs.

    A terminal job is reaped once ``cleanup_after`` is reached. Any job not
    touched for ``orphan_max_age_seconds`` is reaped too; a running one is
    cancelled first.
    """

    def __init__(
        self,
        registry: JobRegistry,
        store: TempResultStore,
        controller: Optional[JobController] = None,
        settings: Settings = default_settings,
    ):
        self.registry = registry
        self.store = store
        self.controller = controller
        self.settings = settings
        self._task: Optional[asyncio.Task] = None

    def sweep_once(self, now: Optional[datetime] = None) -> List[str]:
        """Reap everything due at ``now``. Returns the reaped job ids."""
        now = now or datetime.utcnow()
        max_age = timedelta(seconds=self.settings.orphan_max_age_seconds)
        reaped = []

        for job in self.registry.list():
            due = job.status.is_terminal and job.cleanup_after is not None and job.cleanup_after <= now
            orphaned = now - job.last_touched > max_age
            if not (due or orphaned):
                continue

            if job.status == JobStatus.RUNNING:
                if self.controller is not None:
                    self.controller.cancel(job.id)
                # the controller cleans up once the job unwinds
                continue

            age_minutes = round((now - job.created_at).total_seconds() / 60)
            reason = "retention elapsed" if due else "abandoned"
            logger.info(f"Cleaning up job {job.id} ({reason}, age: {age_minutes} minutes)")
            self.store.remove_job_dir(job.id)
            self.registry.remove(job.id)
            reaped.append(job.id)

        # Directories left behind by a previous process
        known = {job.id for job in self.registry.list()}
        stale = self.store.cleanup_expired(keep=known)
        if stale:
            logger.info(f"Removed {stale} stale job directories")
        return reaped

    async def run(self) -> None:
        interval = self.settings.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self.sweep_once)
            except Exception:
                logger.exception("Job sweep failed")

    async def start(self) -> None:
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
