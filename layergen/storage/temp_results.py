"""Per-job working trees with TTL-based cleanup."""

import logging
import os
import re
import shutil
import time
from typing import Optional

from layergen.config import settings

logger = logging.getLogger(__name__)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


class TempResultStore:
    """Lays out and removes job directories under one base directory.

    Each job gets::

        <base>/<job_id>/uploads/    raw uploaded files
        <base>/<job_id>/layers/     staged layer tree
        <base>/<job_id>/working/    pre-resized working copy
        <base>/<job_id>/output/     images/ and metadata/
        <base>/<job_id>/<name>_collection.zip
    """

    def __init__(self, base_dir: Optional[str] = None, ttl_seconds: float = 3600.0):
        self._base_dir = base_dir or settings.work_dir
        os.makedirs(self._base_dir, exist_ok=True)
        self._ttl_seconds = ttl_seconds

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def get_job_dir(self, job_id: str) -> str:
        """Get or create directory for a job's files."""
        job_dir = os.path.join(self._base_dir, job_id)
        os.makedirs(job_dir, exist_ok=True)
        return job_dir

    def job_path(self, job_id: str, *parts: str) -> str:
        return os.path.join(self._base_dir, job_id, *parts)

    def uploads_dir(self, job_id: str) -> str:
        return self.job_path(job_id, "uploads")

    def layers_dir(self, job_id: str) -> str:
        return self.job_path(job_id, "layers")

    def working_dir(self, job_id: str) -> str:
        return self.job_path(job_id, "working")

    def output_dir(self, job_id: str) -> str:
        return self.job_path(job_id, "output")

    def archive_path(self, job_id: str, collection_name: str) -> str:
        safe = _UNSAFE_RE.sub("_", collection_name).strip("_") or "collection"
        return self.job_path(job_id, f"{safe}_collection.zip")

    def job_dir_exists(self, job_id: str) -> bool:
        return os.path.isdir(self.job_path(job_id))

    def remove_job_dir(self, job_id: str) -> bool:
        job_dir = self.job_path(job_id)
        if not os.path.isdir(job_dir):
            return False
        shutil.rmtree(job_dir, ignore_errors=True)
        logger.info(f"Removed working tree for job {job_id}")
        return True

    def cleanup_expired(self, keep: Optional[set] = None) -> int:
        """Remove job directories older than TTL. Returns count of removed dirs.

        Directories named in ``keep`` are left alone.
        """
        now = time.time()
        removed = 0
        if not os.path.exists(self._base_dir):
            return 0
        for entry in os.listdir(self._base_dir):
            if keep and entry in keep:
                continue
            job_dir = os.path.join(self._base_dir, entry)
            if not os.path.isdir(job_dir):
                continue
            mtime = os.path.getmtime(job_dir)
            if now - mtime > self._ttl_seconds:
                shutil.rmtree(job_dir, ignore_errors=True)
                removed += 1
        return removed


def remove_output(output_dir: str) -> None:
    """Delete generated ``images/`` and ``metadata/`` under ``output_dir``."""
    for sub in ("images", "metadata"):
        path = os.path.join(output_dir, sub)
        if os.path.isdir(path):
            shutil.rmtree(path, ignore_errors=True)
