"""Error kinds raised by the planner, snapshot protocol and retention."""
from __future__ import annotations

import enum


class ErrorKind(enum.Enum):
    SPEC_INVALID = "spec-invalid"
    LISTING_FAILED = "listing-failed"
    GUARD_DUPLICATE = "guard-duplicate"
    TRANSFER_FAILED = "transfer-failed"
    PRUNE_FAILED = "prune-failed"


class BackupError(Exception):
    """Base class for all task or spec scoped failures.

    Carries the structured context needed for a single log line: the task id
    (None while planning) and the datasets involved.
    """
    kind: ErrorKind

    def __init__(
        self,
        message: str,
        task_id: int | None = None,
        dataset: str | None = None,
        destination: str | None = None,
    ):
        self.message = message
        self.task_id = task_id
        self.dataset = dataset
        self.destination = destination
        super().__init__(message)


class SpecError(BackupError):
    """A backup spec combines options that cannot be resolved."""
    kind = ErrorKind.SPEC_INVALID


class ListingError(BackupError):
    """Datasets matching a spec could not be listed on the source."""
    kind = ErrorKind.LISTING_FAILED


class DuplicateCycleError(BackupError):
    """A destination snapshot for this minute already exists."""
    kind = ErrorKind.GUARD_DUPLICATE


class TransferError(BackupError):
    """Snapshot creation, send/recv, rotation or tagging failed."""
    kind = ErrorKind.TRANSFER_FAILED


class PruneError(BackupError):
    """Retention could not be evaluated for a task."""
    kind = ErrorKind.PRUNE_FAILED
