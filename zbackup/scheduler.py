"""Run backup tasks on a bounded worker pool and aggregate the outcome."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING

from zbackup.backup import run_cycle
from zbackup.errors import BackupError
from zbackup.retention import prune

if TYPE_CHECKING:
    from zbackup.models import BackupTask, Naming

logger = logging.getLogger(__name__)


def run_task(task: "BackupTask", naming: "Naming") -> None:
    """One task: a backup cycle, then retention on success."""
    logger.info("[%d]: starting backup %s -> %s", task.id, task.source, task.destination)
    run_cycle(task, naming)
    prune(task, naming)
    logger.info("[%d]: backup done", task.id)


def dry_run(tasks: list["BackupTask"]) -> int:
    """Print the source -> destination mapping without touching any dataset."""
    for task in tasks:
        print(f"[{task.id}] {task.source} -> {task.destination}")
    return 0


def run(
    tasks: list["BackupTask"],
    max_parallel: int,
    naming: "Naming",
    dry_run_only: bool = False,
) -> int:
    """
    Run every task, at most max_parallel at a time. Returns exit code
    (0=all succeeded, 1=at least one failed).

    A failing task never cancels the others; it is reported once and left
    for the next invocation.
    """
    if dry_run_only:
        return dry_run(tasks)
    if max_parallel < 1:
        raise ValueError(f"max_parallel must be >= 1, got {max_parallel}")

    failed: list[int] = []
    with ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix="zbackup") as pool:
        futures = {pool.submit(run_task, task, naming): task for task in tasks}
        for future in as_completed(futures):
            task = futures[future]
            try:
                future.result()
            except BackupError as e:
                logger.error("[%d]: %s", task.id, e)
                failed.append(task.id)
            except Exception as e:
                logger.error("[%d]: unexpected failure: %s", task.id, e, exc_info=True)
                failed.append(task.id)

    if failed:
        logger.warning(
            "Completed with errors: %d succeeded, %d failed (tasks %s)",
            len(tasks) - len(failed), len(failed), ", ".join(map(str, sorted(failed))),
        )
        return 1
    logger.info("All %d task(s) completed successfully", len(tasks))
    return 0
