"""Job registry: the single owner of job records."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from layergen.jobs.models import JobRecord


class JobRegistry(ABC):
    """Storage interface for job records (in memory, database, ...)."""

    @abstractmethod
    def add(self, job: JobRecord) -> None:
        ...

    @abstractmethod
    def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    def update(self, job_id: str, **fields) -> Optional[JobRecord]:
        """Set fields on a record and refresh ``last_touched``."""
        ...

    @abstractmethod
    def remove(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    def list(self) -> List[JobRecord]:
        ...


class InMemoryJobRegistry(JobRegistry):
    """Process-local registry. Safe to use from worker threads."""

    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.RLock()

    def add(self, job: JobRecord) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.get(job_id)

    def update(self, job_id: str, **fields) -> Optional[JobRecord]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            for name, value in fields.items():
                setattr(job, name, value)
            job.last_touched = datetime.utcnow()
            return job

    def remove(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.pop(job_id, None)

    def list(self) -> List[JobRecord]:
        with self._lock:
            return list(self._jobs.values())
