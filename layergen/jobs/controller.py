"""Job controller: runs one generation job end to end.

Called by the InProcessQueue via run_in_executor (runs in a thread). The
controller owns the job's lifecycle:

    pending -> running -> completed | failed | cancelled

Items are produced by a bounded thread pool; each task selects, renders and
writes one item. Cancellation and the job deadline share one event that
every task checks between steps.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from layergen.config import Settings, settings as default_settings
from layergen.engine.catalog import load_catalog
from layergen.engine.metadata import build_metadata, ensure_output_dirs, write_item
from layergen.engine.policy import JobPolicy, choose_policy, retention_seconds
from layergen.engine.rarity import assign_weights
from layergen.engine.renderer import PngSettings, Renderer, VariantCache, pre_resize_catalog
from layergen.engine.selector import Selector
from layergen.errors import (
    ErrorKind,
    GenerationCancelledError,
    GenerationTimeoutError,
    NoLayersError,
    classify_exception,
)
from layergen.jobs import progress as phases
from layergen.jobs.models import JobRecord, JobStatus, ProgressSample
from layergen.jobs.progress import ProgressReporter
from layergen.jobs.registry import JobRegistry
from layergen.storage.packager import create_archive
from layergen.storage.temp_results import TempResultStore, remove_output

logger = logging.getLogger(__name__)

HostCallback = Callable[[str, ProgressSample], None]

USER_MESSAGES = {
    ErrorKind.NO_LAYERS: "Generation failed: no valid layers found",
    ErrorKind.EMPTY_LAYER: "Generation failed: a layer has no PNG images",
    ErrorKind.BAD_TRAIT_IMAGE: "Generation failed: a trait image could not be read",
    ErrorKind.INSUFFICIENT_DIVERSITY: (
        "Generation failed: not enough unique trait combinations for the "
        "requested collection size"
    ),
    ErrorKind.TIMEOUT: "Generation failed: timed out",
    ErrorKind.CANCELLED: "Generation cancelled by user",
    ErrorKind.OUT_OF_MEMORY: (
        "Generation failed: Out of memory. Try enabling Low Memory Mode or "
        "reducing collection size."
    ),
    ErrorKind.IO_ERROR: "Generation failed: output files could not be written",
}


class RunContext:
    """Cancel flag, deadline and first failure for one running job."""

    def __init__(self, cancel_event: threading.Event, timeout_seconds: float):
        self.cancel_event = cancel_event
        self.timeout_seconds = timeout_seconds
        self.deadline = time.monotonic() + timeout_seconds
        self.timed_out = False
        self.first_error: Optional[BaseException] = None
        self._lock = threading.Lock()

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def expire(self) -> None:
        self.timed_out = True
        self.cancel_event.set()

    def checkpoint(self) -> None:
        """Raise if the job was cancelled or ran past its deadline."""
        if not self.cancel_event.is_set() and time.monotonic() > self.deadline:
            self.expire()
        if self.cancel_event.is_set():
            if self.timed_out:
                raise GenerationTimeoutError(self.timeout_seconds)
            raise GenerationCancelledError()

    def fail(self, exc: BaseException) -> None:
        """Record the first failure and stop the other tasks."""
        with self._lock:
            if self.first_error is None:
                self.first_error = exc
        self.cancel_event.set()


class JobController:
    """Drives catalog -> selection -> render -> metadata -> package for a job."""

    def __init__(
        self,
        registry: JobRegistry,
        store: TempResultStore,
        settings: Settings = default_settings,
        on_progress: Optional[HostCallback] = None,
    ):
        self.registry = registry
        self.store = store
        self.settings = settings
        self._on_progress = on_progress
        self._events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def _event_for(self, job_id: str) -> threading.Event:
        with self._lock:
            return self._events.setdefault(job_id, threading.Event())

    def cancel(self, job_id: str) -> bool:
        """Request cooperative cancellation of a job.

        Returns False if the job is unknown or already finished.
        """
        job = self.registry.get(job_id)
        if job is None or job.status.is_terminal:
            return False
        self._event_for(job_id).set()
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _record_sample(self, job_id: str, sample: ProgressSample) -> None:
        self.registry.update(
            job_id,
            progress_percent=sample.progress_percent,
            produced_count=sample.produced_count,
            message=sample.message,
            detail=sample.detail,
        )
        if self._on_progress:
            self._on_progress(job_id, sample)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, job: JobRecord) -> JobRecord:
        """Run ``job`` to a terminal state and return the updated record."""
        if self.registry.get(job.id) is None:
            self.registry.add(job)
        job = self.registry.get(job.id)
        if job.status.is_terminal:
            return job

        request = job.request
        output_dir = job.output_dir or self.store.output_dir(job.id)
        policy = choose_policy(request.collection_size, request.low_memory, self.settings)
        ctx = RunContext(self._event_for(job.id), policy.timeout_seconds)
        reporter = ProgressReporter(
            request.collection_size,
            policy.progress_step,
            callback=lambda sample: self._record_sample(job.id, sample),
        )

        self.registry.update(
            job.id,
            status=JobStatus.RUNNING,
            started_at=datetime.utcnow(),
            output_dir=output_dir,
        )
        logger.info(
            f"Starting job {job.id}: {request.collection_size} items, "
            f"{policy.workers} workers, low_memory={policy.low_memory}, "
            f"timeout={policy.timeout_seconds:.0f}s"
        )

        try:
            self._generate(job, ctx, policy, reporter, output_dir)
        except Exception as exc:
            self._finish_failed(job, exc, output_dir)
        finally:
            with self._lock:
                self._events.pop(job.id, None)

        return self.registry.get(job.id) or job

    def _generate(
        self,
        job: JobRecord,
        ctx: RunContext,
        policy: JobPolicy,
        reporter: ProgressReporter,
        output_dir: str,
    ) -> None:
        request = job.request
        size = request.collection_size

        reporter.phase(phases.PHASE_LOAD, "Loading traits...", job.layers_dir)
        catalog = load_catalog(job.layers_dir).configure(request.layers)
        catalog = assign_weights(catalog, request.rarity_mode, request.ranked_tiers)
        if not catalog.active_layers():
            raise NoLayersError(job.layers_dir)

        selector = Selector(catalog, size, request.allow_duplicates, request.seed)
        selector.check_capacity()
        ctx.checkpoint()

        canvas = (
            request.canvas_width or self.settings.canvas_width,
            request.canvas_height or self.settings.canvas_height,
        )
        if request.pre_resize or policy.low_memory:
            reporter.phase(phases.PHASE_PRE_RESIZE, "Preparing layers...", f"Canvas {canvas[0]}x{canvas[1]}")
            catalog = pre_resize_catalog(
                catalog,
                self.store.working_dir(job.id),
                canvas,
                resample=policy.resample,
                reducing_gap=policy.reducing_gap,
                checkpoint=ctx.checkpoint,
            )

        renderer = Renderer(
            catalog,
            canvas=canvas,
            png=PngSettings(policy.compress_level, policy.compress_type),
            cache=VariantCache(policy.cache_bytes),
        )
        reporter.phase(
            phases.PHASE_SELECTION,
            "Generating items...",
            f"{size} items across {len(selector.layers)} layers "
            f"(capacity {selector.capacity})",
        )
        ensure_output_dirs(output_dir)
        self._produce_all(job, ctx, policy, reporter, selector, renderer, output_dir)

        if reporter.produced != size:
            raise GenerationCancelledError(
                f"Only {reporter.produced} of {size} items were produced"
            )

        output_location = output_dir
        if job.package:
            reporter.phase(phases.PHASE_PACKAGING, "Creating download package...")
            archive = self.store.archive_path(job.id, request.collection_name)
            create_archive(output_dir, archive, checkpoint=ctx.checkpoint)
            output_location = archive

        reporter.phase(
            phases.PHASE_DONE,
            "Generation completed!",
            f"Generated {size} items successfully",
        )
        now = datetime.utcnow()
        self.registry.update(
            job.id,
            status=JobStatus.COMPLETED,
            produced_count=size,
            output_location=output_location,
            completed_at=now,
            cleanup_after=now + timedelta(seconds=retention_seconds(size, self.settings)),
            result={
                "total_generated": size,
                "layers": [layer.name for layer in selector.layers],
                "usage_counts": selector.usage_counts,
                "capacity": selector.capacity,
                "fallbacks": selector.fallbacks,
                "workers": policy.workers,
                "low_memory": policy.low_memory,
                "compress_level": policy.compress_level,
            },
        )
        logger.info(f"Job {job.id} completed: {size} items -> {output_location}")

    def _produce_all(
        self,
        job: JobRecord,
        ctx: RunContext,
        policy: JobPolicy,
        reporter: ProgressReporter,
        selector: Selector,
        renderer: Renderer,
        output_dir: str,
    ) -> None:
        request = job.request

        def produce_one() -> None:
            try:
                ctx.checkpoint()
                picked = selector.accept_next(ctx.checkpoint)
                if picked is None:
                    return
                index, dna = picked
                image_bytes = renderer.render(dna, ctx.checkpoint)
                metadata = build_metadata(
                    index,
                    dna,
                    request.collection_name,
                    request.collection_description,
                    request.cid,
                )
                ctx.checkpoint()
                write_item(
                    output_dir,
                    index,
                    image_bytes,
                    metadata,
                    attempts=self.settings.io_retry_attempts,
                    base_delay=self.settings.io_retry_base_delay,
                    checkpoint=ctx.checkpoint,
                )
                reporter.advance()
            except BaseException as exc:
                ctx.fail(exc)
                raise

        with ThreadPoolExecutor(
            max_workers=policy.workers,
            thread_name_prefix=f"layergen-{job.id[:8]}",
        ) as pool:
            futures = [pool.submit(produce_one) for _ in range(request.collection_size)]
            _, not_done = wait(futures, timeout=ctx.remaining(), return_when=FIRST_EXCEPTION)
            if not_done:
                if ctx.first_error is None:
                    ctx.expire()
                else:
                    ctx.cancel_event.set()
                for future in not_done:
                    future.cancel()

        if ctx.first_error is not None:
            raise ctx.first_error
        if ctx.timed_out:
            raise GenerationTimeoutError(ctx.timeout_seconds)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _finish_failed(self, job: JobRecord, exc: Exception, output_dir: str) -> None:
        error = classify_exception(exc)
        size = job.request.collection_size
        now = datetime.utcnow()
        cleanup_after = now + timedelta(seconds=retention_seconds(size, self.settings))

        if error is None:
            logger.exception(f"Job {job.id} failed with an unexpected error")
            status = JobStatus.FAILED
            fields = dict(message="Generation failed", detail=f"{type(exc).__name__}: {exc}")
        else:
            status = JobStatus.CANCELLED if error.kind == ErrorKind.CANCELLED else JobStatus.FAILED
            fields = dict(
                message=USER_MESSAGES[error.kind],
                detail=error.message,
                error=error.to_report(),
            )
            log = logger.info if status == JobStatus.CANCELLED else logger.error
            log(f"Job {job.id} {status.value}: {error.kind.value}: {error.message}")

        # Partial results are never delivered
        remove_output(output_dir)
        self.store.remove_job_dir(job.id)

        self.registry.update(
            job.id,
            status=status,
            completed_at=now,
            cleanup_after=cleanup_after,
            output_location=None,
            **fields,
        )
