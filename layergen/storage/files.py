"""Output file writes with bounded retry."""

import logging
import os
import time
from typing import Callable, Optional

from layergen.errors import StorageIOError

logger = logging.getLogger(__name__)


def write_atomic(
    path: str,
    data: bytes,
    attempts: int = 3,
    base_delay: float = 0.05,
    checkpoint: Optional[Callable[[], None]] = None,
) -> None:
    """Write ``data`` to ``path`` via a ``.part`` file and rename.

    Transient OS errors are retried with exponential backoff. ``checkpoint``
    runs before every backoff sleep and again before the final rename, so a
    cancelled job never publishes a file it was still writing.
    """
    tmp_path = f"{path}.part"
    last_error: Optional[OSError] = None
    for attempt in range(max(1, attempts)):
        try:
            with open(tmp_path, "wb") as fh:
                fh.write(data)
            if checkpoint:
                checkpoint()
            os.replace(tmp_path, path)
            return
        except OSError as exc:
            last_error = exc
            logger.warning(f"Write failed for {path}: {exc} (attempt {attempt + 1}/{attempts})")
        except BaseException:
            _discard(tmp_path)
            raise

        if attempt < attempts - 1:
            if checkpoint:
                try:
                    checkpoint()
                except BaseException:
                    _discard(tmp_path)
                    raise
            time.sleep(base_delay * (2 ** attempt))

    _discard(tmp_path)
    raise StorageIOError(path, str(last_error))


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
