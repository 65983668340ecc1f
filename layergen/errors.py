"""Structured error kinds raised by the generation pipeline.

Engine components raise these; only the job controller turns them into
user-facing messages.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ErrorKind(str, Enum):
    NO_LAYERS = "NoLayers"
    EMPTY_LAYER = "EmptyLayer"
    BAD_TRAIT_IMAGE = "BadTraitImage"
    INSUFFICIENT_DIVERSITY = "InsufficientDiversity"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    OUT_OF_MEMORY = "OutOfMemory"
    IO_ERROR = "IoError"


class ErrorReport(BaseModel):
    """Error shape handed to the host."""
    kind: ErrorKind
    message: str
    retryable: bool = False


class GenerationError(Exception):
    """Base class for every failure the pipeline reports."""

    kind: ErrorKind = ErrorKind.IO_ERROR
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_report(self, message: Optional[str] = None) -> ErrorReport:
        return ErrorReport(
            kind=self.kind,
            message=message or self.message,
            retryable=self.retryable,
        )


class NoLayersError(GenerationError):
    kind = ErrorKind.NO_LAYERS

    def __init__(self, root: str = ""):
        super().__init__(f"No valid layers found in {root or 'the layers directory'}")
        self.root = root


class EmptyLayerError(GenerationError):
    kind = ErrorKind.EMPTY_LAYER

    def __init__(self, name: str):
        super().__init__(f"Layer '{name}' has no PNG variants")
        self.name = name


class BadTraitImageError(GenerationError):
    kind = ErrorKind.BAD_TRAIT_IMAGE

    def __init__(self, path: str, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(f"Unreadable trait image {path}{detail}")
        self.path = path
        self.reason = reason


class InsufficientDiversityError(GenerationError):
    kind = ErrorKind.INSUFFICIENT_DIVERSITY

    def __init__(self, requested: int, capacity: int):
        super().__init__(
            f"Requested {requested} unique items but the layers only allow "
            f"{capacity} combinations"
        )
        self.requested = requested
        self.capacity = capacity


class GenerationTimeoutError(GenerationError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Generation timeout after {timeout_seconds:.0f}s")
        self.timeout_seconds = timeout_seconds


class GenerationCancelledError(GenerationError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Generation cancelled by user"):
        super().__init__(message)


class OutOfMemoryError(GenerationError):
    kind = ErrorKind.OUT_OF_MEMORY

    def __init__(self, detail: str = ""):
        super().__init__(
            "Out of memory. Try enabling Low Memory Mode or reducing collection size."
            + (f" ({detail})" if detail else "")
        )


class StorageIOError(GenerationError):
    kind = ErrorKind.IO_ERROR
    retryable = True

    def __init__(self, path: str, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(f"Filesystem error on {path}{detail}")
        self.path = path


def classify_exception(exc: BaseException) -> Optional[GenerationError]:
    """Map a stray exception onto an error kind, or None if it has none."""
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, MemoryError):
        return OutOfMemoryError(str(exc))
    if isinstance(exc, OSError):
        if "ENOMEM" in str(exc) or "out of memory" in str(exc).lower():
            return OutOfMemoryError(str(exc))
        return StorageIOError(getattr(exc, "filename", None) or "", str(exc))
    return None
