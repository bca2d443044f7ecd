"""
webp_backend/services/errors.py

Error taxonomy for the image pipeline plus the per-stage result type used by
the batch orchestrator.

Hierarchy:
    PipelineError
      ├── ValidationError        file fails format/size/dimension limits (never retried)
      ├── StorageError
      │     ├── TransientIOError  network/storage hiccup (retried)
      │     └── ObjectNotFoundError
      ├── RecordUpdateError      relational record could not be rewritten
      ├── BackupError            backup creation/restore failure
      ├── ItemFailed             terminal per-item state in a batch
      └── SetupError             missing configuration / credentials (process exit)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Generic, List, Optional, Sequence, TypeVar

T = TypeVar("T")


class PipelineError(Exception):
    """Base class for every error raised by the pipeline services."""


class ValidationError(PipelineError):
    def __init__(self, errors: Sequence[str], constraints: Sequence[str] = ()) -> None:
        self.errors: List[str] = list(errors)
        self.constraints: List[str] = list(constraints)
        super().__init__("; ".join(self.errors) or "validation failed")


class StorageError(PipelineError):
    def __init__(self, message: str, *, bucket: Optional[str] = None, path: Optional[str] = None) -> None:
        self.bucket = bucket
        self.path = path
        super().__init__(message)


class TransientIOError(StorageError):
    """Retryable network or storage-layer failure."""


class ObjectNotFoundError(StorageError):
    pass


class RecordUpdateError(PipelineError):
    def __init__(self, message: str, *, transient: bool = False) -> None:
        self.transient = transient
        super().__init__(message)


class BackupError(PipelineError):
    pass


class ItemFailed(PipelineError):
    def __init__(self, source: str, stage: str, cause: BaseException) -> None:
        self.source = source
        self.stage = stage
        self.cause = cause
        super().__init__(f"{source} failed during {stage}: {cause}")


class SetupError(PipelineError):
    pass


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    STORAGE = "storage"
    RECORD = "record"
    BACKUP = "backup"
    UNEXPECTED = "unexpected"


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception onto the coarse kind reported in batch results."""
    if isinstance(exc, ValidationError):
        return ErrorKind.VALIDATION
    if isinstance(exc, TransientIOError):
        return ErrorKind.TRANSIENT
    if isinstance(exc, ObjectNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, StorageError):
        return ErrorKind.STORAGE
    if isinstance(exc, RecordUpdateError):
        return ErrorKind.TRANSIENT if exc.transient else ErrorKind.RECORD
    if isinstance(exc, BackupError):
        return ErrorKind.BACKUP
    return ErrorKind.UNEXPECTED


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """Outcome of one pipeline stage: either a value or an error with its kind."""

    stage: str
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None

    @classmethod
    def success(cls, stage: str, value: Any = None) -> "StageResult[Any]":
        return cls(stage=stage, ok=True, value=value)

    @classmethod
    def failure(cls, stage: str, exc: BaseException) -> "StageResult[Any]":
        return cls(stage=stage, ok=False, error=str(exc), kind=classify_error(exc))


__all__ = [
    "PipelineError",
    "ValidationError",
    "StorageError",
    "TransientIOError",
    "ObjectNotFoundError",
    "RecordUpdateError",
    "BackupError",
    "ItemFailed",
    "SetupError",
    "ErrorKind",
    "classify_error",
    "StageResult",
]
