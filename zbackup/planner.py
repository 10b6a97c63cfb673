"""Expand backup specs into one BackupTask per source dataset."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from zbackup import zfs
from zbackup.errors import ListingError, SpecError
from zbackup.executor import ExecutorError, LocalExecutor, SSHExecutor
from zbackup.models import BackupTask

if TYPE_CHECKING:
    from zbackup.executor import Executor
    from zbackup.models import BackupSpec, Naming

logger = logging.getLogger(__name__)


def destination_for(spec: "BackupSpec", src_dataset: str, naming: "Naming") -> str:
    """Return the destination dataset for a source dataset.

    Example: tank/home/user on host db1 -> backup/db1-tank-home-user
    With a prefix the destination is always root/prefix.
    """
    if spec.destination_prefix:
        return f"{spec.destination_root}/{spec.destination_prefix}"
    return f"{spec.destination_root}/{naming.hostname}-{src_dataset.replace('/', '-')}"


def check_spec(spec: "BackupSpec") -> None:
    """Raise SpecError when a prefix could receive several datasets."""
    if spec.destination_prefix and spec.recursive:
        raise SpecError(
            "'remote_prefix' and 'recursive' are mutually exclusive; skipping",
            dataset=spec.source,
        )
    if spec.destination_prefix and spec.is_wildcard:
        raise SpecError(
            "'remote_prefix' and a '*' pattern are mutually exclusive; skipping",
            dataset=spec.source,
        )


def resolve(spec: "BackupSpec", src_executor: "Executor") -> list[str]:
    """Return the source datasets a spec matches."""
    try:
        return zfs.list_datasets(spec.source, zfs.FILESYSTEM, spec.recursive, src_executor)
    except ExecutorError as e:
        raise ListingError(str(e), dataset=spec.source) from e


class ExecutorFactory:
    """Build destination executors, one per distinct transport."""

    def __init__(self, local: "Executor | None" = None):
        self.local = local or LocalExecutor()
        self._remote: dict[tuple, "Executor"] = {}

    def __call__(self, spec: "BackupSpec") -> "Executor":
        if spec.local_mode:
            return self.local
        key = (spec.host, spec.user, spec.key)
        if key not in self._remote:
            self._remote[key] = SSHExecutor(host=spec.host, user=spec.user, key=spec.key)
        return self._remote[key]


def plan(
    specs: list["BackupSpec"],
    src_executor: "Executor",
    naming: "Naming",
    executor_factory: Callable[["BackupSpec"], "Executor"] | None = None,
) -> list[BackupTask]:
    """
    Turn specs into tasks, in spec order then listing order.

    A bad spec or a failed listing is logged and skipped; it never aborts
    the plan. A dataset already claimed by an earlier spec is skipped too,
    so no two tasks ever touch the same source dataset.
    """
    if executor_factory is None:
        executor_factory = ExecutorFactory(local=src_executor)

    tasks: list[BackupTask] = []
    claimed: dict[str, str] = {}

    for spec in specs:
        try:
            check_spec(spec)
            datasets = resolve(spec, src_executor)
        except (SpecError, ListingError) as e:
            logger.error("%s: %s", spec.source, e)
            continue

        if not datasets:
            logger.warning("%s: no datasets matched", spec.source)
            continue

        if spec.destination_prefix:
            logger.warning(
                "%s: 'remote_prefix' set; %s on the destination may be overwritten",
                spec.source, destination_for(spec, datasets[0], naming),
            )

        dst_executor = executor_factory(spec)
        for src_dataset in datasets:
            if src_dataset in claimed:
                logger.warning(
                    "%s: already planned by spec %r, skipping", src_dataset, claimed[src_dataset]
                )
                continue
            claimed[src_dataset] = spec.source
            task = BackupTask(
                id=len(tasks),
                source=src_dataset,
                destination=destination_for(spec, src_dataset, naming),
                retention=spec.retention,
                src_executor=src_executor,
                dst_executor=dst_executor,
                is_local=spec.local_mode,
            )
            logger.debug("[%d]: planned %s -> %s", task.id, task.source, task.destination)
            tasks.append(task)

    return tasks
