"""Application configuration via environment variables."""

import os
import tempfile
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Working trees
    work_dir: str = os.path.join(tempfile.gettempdir(), "layergen_jobs")

    # Output canvas
    canvas_width: int = 1024
    canvas_height: int = 1024

    # Request limits
    max_collection_size: int = 10000
    max_upload_file_bytes: int = 10 * 1024 * 1024
    max_upload_files: int = 10000

    # Job timeouts: max(base, per_item * N + slack)
    base_timeout_seconds: float = 180.0
    per_item_timeout_seconds: float = 0.5
    timeout_slack_seconds: float = 30.0

    # Retention of terminal jobs: min(base * max(1, N / items_per_step), max)
    retention_base_seconds: float = 300.0
    retention_max_seconds: float = 1800.0
    retention_items_per_step: int = 1000

    # Orphan sweeping
    orphan_max_age_seconds: float = 3600.0
    sweep_interval_seconds: float = 600.0

    # Rendering
    variant_cache_bytes: int = 256 * 1024 * 1024
    low_memory_threshold: int = 5000
    cpu_count: Optional[int] = None

    # Output writes
    io_retry_attempts: int = 3
    io_retry_base_delay: float = 0.05

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def effective_cpu_count(self) -> int:
        return self.cpu_count or os.cpu_count() or 1


settings = Settings()
