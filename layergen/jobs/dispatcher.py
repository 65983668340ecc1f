"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from typing import Optional

from layergen.jobs.models import JobRecord


class JobDispatcher(ABC):
    """Abstract interface for job dispatching (local or remote workers)."""

    @abstractmethod
    async def submit(self, job: JobRecord) -> str:
        """Submit a job for processing. Returns job_id."""
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        """Get current status of a job."""
        ...

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Request cancellation. Returns False if the job is unknown or finished."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start worker loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
