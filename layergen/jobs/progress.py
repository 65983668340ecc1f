"""Monotone, throttled progress reporting for a generation job.

Percent is derived only from phase marks and the count of produced items:

    load 5 -> pre-resize 10 -> selection 12 -> generation 12..90
    -> packaging 95 -> done 100
"""

import logging
import threading
from typing import Callable, Optional

from layergen.jobs.models import ProgressSample

logger = logging.getLogger(__name__)

PHASE_LOAD = 5.0
PHASE_PRE_RESIZE = 10.0
PHASE_SELECTION = 12.0
PHASE_GENERATION_END = 90.0
PHASE_PACKAGING = 95.0
PHASE_DONE = 100.0

ProgressCallback = Callable[[ProgressSample], None]


class ProgressReporter:
    """Emits samples that never regress in percent or produced count.

    ``advance()`` is called by workers once per finished item; a sample
    goes out every ``step`` items and on the last one.
    """

    def __init__(self, total: int, step: int, callback: Optional[ProgressCallback] = None):
        self.total = total
        self.step = max(1, step)
        self._callback = callback
        self._lock = threading.Lock()
        self._percent = 0.0
        self._produced = 0

    @property
    def produced(self) -> int:
        return self._produced

    def _emit(self, percent: float, message: str, detail: str) -> None:
        # caller holds the lock
        self._percent = max(self._percent, min(percent, PHASE_DONE))
        sample = ProgressSample(
            progress_percent=round(self._percent, 2),
            message=message,
            detail=detail,
            produced_count=self._produced,
        )
        logger.debug(f"Progress {sample.progress_percent}% ({sample.produced_count}/{self.total}) {message}")
        if self._callback:
            self._callback(sample)

    def phase(self, percent: float, message: str, detail: str = "") -> None:
        with self._lock:
            self._emit(percent, message, detail)

    def generation_percent(self, produced: int) -> float:
        span = PHASE_GENERATION_END - PHASE_SELECTION
        return PHASE_SELECTION + span * (produced / max(1, self.total))

    def advance(self) -> int:
        """Count one produced item; returns the new produced count."""
        with self._lock:
            self._produced += 1
            produced = self._produced
            if produced % self.step == 0 or produced == self.total:
                self._emit(
                    self.generation_percent(produced),
                    f"Generated {produced}/{self.total} items",
                    f"Item {produced} written",
                )
            return produced
