"""Zip packaging of a finished output tree."""

import logging
import os
import zipfile
from typing import Callable, Optional

from layergen.errors import StorageIOError

logger = logging.getLogger(__name__)

PACKAGED_DIRS = ("images", "metadata")


def create_archive(
    output_dir: str,
    zip_path: str,
    checkpoint: Optional[Callable[[], None]] = None,
) -> int:
    """Zip ``images/`` and ``metadata/`` from ``output_dir`` into ``zip_path``.

    Returns the archive size in bytes. A partial archive is removed on any
    failure, including cancellation via ``checkpoint``.
    """
    parent = os.path.dirname(zip_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    if os.path.exists(zip_path):
        os.remove(zip_path)

    try:
        with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
            for sub in PACKAGED_DIRS:
                source = os.path.join(output_dir, sub)
                if not os.path.isdir(source):
                    logger.warning(f"Directory not found while packaging: {source}")
                    continue
                for name in sorted(os.listdir(source), key=_natural_key):
                    if checkpoint:
                        checkpoint()
                    zf.write(os.path.join(source, name), f"{sub}/{name}")
    except BaseException as exc:
        if os.path.exists(zip_path):
            os.remove(zip_path)
        if isinstance(exc, OSError):
            raise StorageIOError(zip_path, str(exc)) from exc
        raise

    size = os.path.getsize(zip_path)
    if size == 0:
        os.remove(zip_path)
        raise StorageIOError(zip_path, "archive is empty")
    logger.info(f"Archive created: {zip_path} ({size} bytes)")
    return size


def _natural_key(name: str):
    stem = os.path.splitext(name)[0]
    return (0, int(stem)) if stem.isdigit() else (1, name)
