"""Per-job tuning tables: worker pool, PNG settings, timeouts, retention."""

import zlib
from dataclasses import dataclass
from typing import Optional

from PIL import Image

from layergen.config import Settings

# (max collection size, PNG compress level); smaller collections compress harder
COMPRESSION_TABLE = (
    (500, 9),
    (2000, 7),
    (5000, 6),
)
DEFAULT_COMPRESSION = 4

# (max collection size, workers) before CPU and low-memory caps
POOL_TABLE = (
    (500, 4),
    (2000, 6),
)
DEFAULT_POOL = 8
LOW_MEMORY_POOL = 2


@dataclass(frozen=True)
class JobPolicy:
    """Everything chosen once per job before generation starts."""
    low_memory: bool
    workers: int
    compress_level: int
    compress_type: int
    resample: int
    reducing_gap: Optional[float]
    cache_bytes: int
    progress_step: int
    timeout_seconds: float


def is_low_memory(collection_size: int, requested: bool, settings: Settings) -> bool:
    return requested or collection_size > settings.low_memory_threshold


def pool_size(collection_size: int, low_memory: bool, cpu_count: int) -> int:
    if low_memory:
        workers = LOW_MEMORY_POOL
    else:
        workers = DEFAULT_POOL
        for limit, size in POOL_TABLE:
            if collection_size <= limit:
                workers = size
                break
        workers = min(workers, max(1, cpu_count))
    return max(1, min(workers, collection_size))


def compression_level(collection_size: int, low_memory: bool) -> int:
    level = DEFAULT_COMPRESSION
    for limit, value in COMPRESSION_TABLE:
        if collection_size <= limit:
            level = value
            break
    if low_memory:
        level = max(1, level - 3)
    return level


def job_timeout(collection_size: int, settings: Settings) -> float:
    return max(
        settings.base_timeout_seconds,
        settings.per_item_timeout_seconds * collection_size + settings.timeout_slack_seconds,
    )


def retention_seconds(collection_size: int, settings: Settings) -> float:
    """Delay before a finished job's tree is swept; grows with size."""
    multiplier = max(1.0, collection_size / settings.retention_items_per_step)
    return min(settings.retention_base_seconds * multiplier, settings.retention_max_seconds)


def progress_step(collection_size: int) -> int:
    return max(1, collection_size // 200)


def choose_policy(collection_size: int, low_memory: bool, settings: Settings) -> JobPolicy:
    low_memory = is_low_memory(collection_size, low_memory, settings)
    return JobPolicy(
        low_memory=low_memory,
        workers=pool_size(collection_size, low_memory, settings.effective_cpu_count()),
        compress_level=compression_level(collection_size, low_memory),
        compress_type=zlib.Z_FILTERED if low_memory else zlib.Z_DEFAULT_STRATEGY,
        resample=Image.Resampling.BILINEAR if low_memory else Image.Resampling.LANCZOS,
        reducing_gap=2.0 if low_memory else None,
        cache_bytes=0 if low_memory else settings.variant_cache_bytes,
        progress_step=progress_step(collection_size),
        timeout_seconds=job_timeout(collection_size, settings),
    )
