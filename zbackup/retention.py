"""Retention: prune old tool-owned snapshots on the destination."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from zbackup import zfs
from zbackup.errors import PruneError
from zbackup.executor import ExecutorError

if TYPE_CHECKING:
    from zbackup.models import BackupTask, Naming, Snapshot

logger = logging.getLogger(__name__)

LAST_ONE = "lastone"

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_TERM = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)"


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as '24h', '90m', '1h30m' or '1.5h'.

    Raises ValueError for anything else; a bare '0' is zero.
    """
    if text == "0":
        return timedelta(0)
    if not text or not re.fullmatch(f"(?:{_TERM})+", text):
        raise ValueError(f"invalid duration {text!r}")
    seconds = sum(float(value) * _UNIT_SECONDS[unit] for value, unit in re.findall(_TERM, text))
    return timedelta(seconds=seconds)


def validate_policy(policy: str) -> None:
    """Raise ValueError unless policy is empty, 'lastone' or a duration."""
    if policy and policy != LAST_ONE:
        parse_duration(policy)


def _is_tagged(snap: "Snapshot", naming: "Naming", task: "BackupTask") -> bool:
    try:
        value = zfs.get_property(snap.full_name, naming.tag, task.dst_executor)
    except ExecutorError as e:
        logger.warning(
            "[%d]: cannot read %s on %s, keeping it: %s", task.id, naming.tag, snap.full_name, e
        )
        return False
    if value != "true":
        logger.debug("[%d]: %s is not created by zbackup, skipping", task.id, snap.full_name)
        return False
    return True


def _snapshots_to_delete(
    tagged: list["Snapshot"],
    policy: str,
    naming: "Naming",
    now: datetime,
) -> list["Snapshot"]:
    """
    Return the tagged snapshots the policy expires, in listing order.

    'lastone' keeps only the newest by name; the fixed-width timestamp makes
    name order chronological. A duration expires snapshots whose embedded
    timestamp is older than now - duration; names that are not timestamps
    are kept.
    """
    if not tagged:
        return []

    if policy == LAST_ONE:
        newest = max(tagged, key=lambda s: s.name)
        return [s for s in tagged if s != newest]

    max_age = parse_duration(policy)
    expired = []
    for snap in tagged:
        try:
            taken = naming.parse_stamp(snap.name)
        except ValueError:
            logger.warning(
                "%s: name is not a %s timestamp, keeping it", snap.full_name, naming.timestamp_format
            )
            continue
        if now - taken > max_age:
            expired.append(snap)
    return expired


def prune(
    task: "BackupTask",
    naming: "Naming",
    now: datetime | None = None,
) -> int:
    """
    Destroy expired tool-owned snapshots of task.destination.
    Returns the number of snapshots destroyed.

    Best effort: a failed destroy is logged and the remaining candidates are
    still attempted. Snapshots without the ownership tag are never touched.
    """
    if not task.retention:
        logger.info("[%d]: retention is not set, keeping all snapshots", task.id)
        return 0
    try:
        validate_policy(task.retention)
    except ValueError as e:
        raise PruneError(str(e), task_id=task.id, destination=task.destination) from e

    now = now or datetime.now()
    logger.debug("[%d]: cleaning expired snapshots, retention: %s", task.id, task.retention)

    try:
        snaps = zfs.list_snapshots(task.destination, task.dst_executor)
    except ExecutorError as e:
        raise PruneError(str(e), task_id=task.id, destination=task.destination) from e

    if len(snaps) <= 1:
        logger.info("[%d]: only %d snapshot(s), nothing to delete", task.id, len(snaps))
        return 0

    tagged = [s for s in snaps if _is_tagged(s, naming, task)]
    to_delete = _snapshots_to_delete(tagged, task.retention, naming, now)

    deleted = 0
    for snap in to_delete:
        logger.debug("[%d]: destroying %s (%s)", task.id, snap.full_name, task.retention)
        try:
            zfs.destroy(snap.full_name, task.dst_executor)
            deleted += 1
        except ExecutorError as e:
            logger.error("[%d]: error destroying %s: %s", task.id, snap.full_name, e)

    logger.info("[%d]: deleted %d of %d expired snapshot(s)", task.id, deleted, len(to_delete))
    return deleted
