"""Snapshot protocol: one backup cycle of one dataset.

A cycle walks GuardCheck -> FullSend | IncrementalSend -> Rotate -> Tag.
The source keeps at most two marker snapshots: the baseline (last state
known to be on the destination) and, only while a transfer is in flight,
the pending marker used as the delta head.
"""
from __future__ import annotations

import contextlib
import enum
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from zbackup import zfs
from zbackup.errors import DuplicateCycleError, TransferError
from zbackup.executor import ExecutorError

if TYPE_CHECKING:
    from zbackup.models import BackupTask, Naming, Snapshot

logger = logging.getLogger(__name__)


class MarkerState(enum.Enum):
    NONE = "none"                    # never backed up: full send
    BASELINE = "baseline"            # incremental from the baseline marker
    STRAY_PENDING = "stray-pending"  # a pending marker survived an aborted cycle


@contextlib.contextmanager
def _step(task: "BackupTask", what: str):
    """Log a step and turn transport failures into a TransferError."""
    logger.debug("[%d]: %s", task.id, what)
    try:
        yield
    except ExecutorError as e:
        raise TransferError(
            f"{what}: {e}",
            task_id=task.id,
            dataset=task.source,
            destination=task.destination,
        ) from e


def detect_markers(task: "BackupTask", naming: "Naming") -> MarkerState:
    src, ex = task.source, task.src_executor
    with _step(task, f"check markers on {src}"):
        if zfs.snapshot_exists(src, naming.pending, ex):
            return MarkerState.STRAY_PENDING
        if zfs.snapshot_exists(src, naming.baseline, ex):
            return MarkerState.BASELINE
    return MarkerState.NONE


def _received_copy(task: "BackupTask", marker: str) -> "Snapshot | None":
    """Return the destination snapshot received from task.source@marker, if any.

    A received snapshot keeps the guid of the snapshot it was sent from.
    The newest snapshots are compared first.
    """
    dst, dst_ex = task.destination, task.dst_executor
    if not zfs.dataset_exists(dst, dst_ex):
        return None
    guid = zfs.get_property(f"{task.source}@{marker}", "guid", task.src_executor)
    for snap in reversed(zfs.list_snapshots(dst, dst_ex)):
        if zfs.get_property(snap.full_name, "guid", dst_ex) == guid:
            return snap
    return None


def recover(task: "BackupTask", naming: "Naming") -> MarkerState:
    """Resolve a pending marker left behind by an aborted cycle.

    If the destination already holds it, finish the rotation. Otherwise
    discard the marker. Returns the marker state the cycle should continue
    from.
    """
    src, ex = task.source, task.src_executor
    pending = f"{src}@{naming.pending}"

    with _step(task, f"inspect stray {pending}"):
        has_baseline = zfs.snapshot_exists(src, naming.baseline, ex)
        landed = _received_copy(task, naming.pending)

    if landed is None:
        logger.warning("[%d]: discarding %s left by an aborted cycle", task.id, pending)
        with _step(task, f"destroy {pending}"):
            zfs.destroy(pending, ex)
        return MarkerState.BASELINE if has_baseline else MarkerState.NONE

    logger.warning(
        "[%d]: %s already received as %s, completing rotation",
        task.id, pending, landed.full_name,
    )
    _rotate(task, naming, has_baseline)
    return MarkerState.BASELINE


def check_baseline(task: "BackupTask", naming: "Naming") -> MarkerState:
    """Confirm the destination holds the baseline marker before a delta send.

    A baseline with no received copy is left by a full send that failed after
    the marker was taken; it is destroyed and the cycle falls back to a full
    send. A received copy missing the ownership tag is tagged here.
    """
    baseline = f"{task.source}@{naming.baseline}"
    with _step(task, f"look up {baseline} on {task.destination}"):
        received = _received_copy(task, naming.baseline)
        tagged = received is not None and zfs.get_property(
            received.full_name, naming.tag, task.dst_executor
        ) == "true"

    if received is None:
        logger.warning(
            "[%d]: %s was never received by %s, starting over with a full send",
            task.id, baseline, task.destination,
        )
        with _step(task, f"destroy {baseline}"):
            zfs.destroy(baseline, task.src_executor)
        return MarkerState.NONE

    if not tagged:
        logger.warning("[%d]: adopting untagged %s", task.id, received.full_name)
        _tag(task, naming, received.name)
    return MarkerState.BASELINE


def _rotate(task: "BackupTask", naming: "Naming", has_baseline: bool = True) -> None:
    # destroy before rename: two markers must never share the baseline name
    src, ex = task.source, task.src_executor
    baseline = f"{src}@{naming.baseline}"
    pending = f"{src}@{naming.pending}"
    if has_baseline:
        with _step(task, f"destroy {baseline}"):
            zfs.destroy(baseline, ex)
    with _step(task, f"rename {pending} to {baseline}"):
        zfs.rename(pending, baseline, ex)


def _tag(task: "BackupTask", naming: "Naming", snapshot_name: str) -> None:
    dst, ex = task.destination, task.dst_executor
    with _step(task, f"set {dst} readonly"):
        zfs.set_property(dst, "readonly", "on", ex)
    with _step(task, f"tag {dst}@{snapshot_name} {naming.tag}=true"):
        zfs.set_property(f"{dst}@{snapshot_name}", naming.tag, "true", ex)


def _send(task: "BackupTask", naming: "Naming", head: str, stamp: str) -> None:
    kind = "incremental" if head else "full"
    with _step(task, f"{kind} send {task.source} -> {task.destination}@{stamp}"):
        zfs.transfer(
            src_dataset=task.source,
            base=naming.baseline,
            head=head,
            src_executor=task.src_executor,
            dst_dataset=task.destination,
            dst_snapshot=stamp,
            dst_executor=task.dst_executor,
        )


def run_cycle(
    task: "BackupTask",
    naming: "Naming",
    now: datetime | None = None,
) -> str:
    """
    Run one backup cycle for a task. Returns the destination snapshot name.

    Raises DuplicateCycleError when this minute's destination snapshot
    already exists, TransferError when any later step fails. Steps that
    completed before a failure are not rolled back; the next cycle's
    marker detection recovers from them.
    """
    stamp = naming.stamp(now or datetime.now())
    src, dst = task.source, task.destination

    with _step(task, f"check {dst}@{stamp} exists"):
        duplicate = zfs.snapshot_exists(dst, stamp, task.dst_executor)
    if duplicate:
        raise DuplicateCycleError(
            f"{dst}@{stamp} already exists, wait for the next minute and run again",
            task_id=task.id,
            dataset=src,
            destination=dst,
        )

    state = detect_markers(task, naming)
    if state is MarkerState.STRAY_PENDING:
        state = recover(task, naming)
    if state is MarkerState.BASELINE:
        state = check_baseline(task, naming)

    if state is MarkerState.NONE:
        logger.info("[%d]: no %s marker on %s, sending full stream", task.id, naming.baseline, src)
        with _step(task, f"create {src}@{naming.baseline}"):
            zfs.create_snapshot(src, naming.baseline, task.src_executor)
        _send(task, naming, "", stamp)
    else:
        with _step(task, f"create {src}@{naming.pending}"):
            zfs.create_snapshot(src, naming.pending, task.src_executor)
        _send(task, naming, naming.pending, stamp)
        _rotate(task, naming)

    _tag(task, naming, stamp)
    logger.info("[%d]: %s -> %s@%s", task.id, src, dst, stamp)
    return stamp
