"""ZFS operations using an Executor for dependency injection.

Every function takes the executor last, so the same code drives the local
source and a local or SSH destination.
"""
from __future__ import annotations

import logging
import shlex
import subprocess
from typing import TYPE_CHECKING

from zbackup.executor import ExecutorError
from zbackup.models import Snapshot

if TYPE_CHECKING:
    from zbackup.executor import Executor

logger = logging.getLogger(__name__)

FILESYSTEM = "filesystem"
SNAPSHOT = "snapshot"

_MISSING = "does not exist"


def _lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def list_datasets(
    pattern: str,
    kind: str,
    recursive: bool,
    executor: "Executor",
) -> list[str]:
    """Return names of the given kind matching pattern.

    A pattern containing '*' lists everything of that kind and keeps the
    names containing the pattern with its surrounding '*' removed.
    """
    if "*" in pattern:
        output = executor.run(["zfs", "list", "-H", "-t", kind, "-o", "name", "-r"])
        needle = pattern.strip("*")
        return [name for name in _lines(output) if needle in name]

    cmd = ["zfs", "list", "-H", "-t", kind, "-o", "name"]
    if recursive:
        cmd.append("-r")
    cmd.append(pattern)
    return _lines(executor.run(cmd))


def list_snapshots(dataset: str, executor: "Executor") -> list[Snapshot]:
    """Return snapshots for a dataset, oldest first."""
    output = executor.run([
        "zfs", "list", "-H", "-t", SNAPSHOT, "-o", "name", "-r", dataset,
    ])
    results = []
    for name in _lines(output):
        # Only include snapshots directly on this dataset (not children)
        if "@" in name and name.split("@")[0] == dataset:
            results.append(Snapshot.parse(name))
    return results


def snapshot_exists(dataset: str, name: str, executor: "Executor") -> bool:
    """Return True if dataset@name exists.

    A missing dataset counts as a missing snapshot; any other failure is
    raised.
    """
    try:
        executor.run([
            "zfs", "list", "-H", "-t", SNAPSHOT, "-o", "name", f"{dataset}@{name}",
        ])
    except ExecutorError as e:
        if _MISSING in e.stderr:
            return False
        raise
    return True


def dataset_exists(dataset: str, executor: "Executor") -> bool:
    """Return True if the dataset exists."""
    try:
        executor.run(["zfs", "list", "-H", "-o", "name", dataset])
    except ExecutorError as e:
        if _MISSING in e.stderr:
            return False
        raise
    return True


def create_snapshot(dataset: str, name: str, executor: "Executor") -> None:
    executor.run(["zfs", "snapshot", f"{dataset}@{name}"])


def destroy(target: str, executor: "Executor") -> None:
    """Destroy a dataset or a single snapshot (never recursively)."""
    executor.run(["zfs", "destroy", target])


def rename(old: str, new: str, executor: "Executor") -> None:
    executor.run(["zfs", "rename", old, new])


def get_property(target: str, prop: str, executor: "Executor") -> str:
    """Return the value of a property ('-' when a user property is unset)."""
    output = executor.run(["zfs", "get", "-H", "-o", "value", prop, target])
    return output.strip()


def set_property(target: str, prop: str, value: str, executor: "Executor") -> None:
    executor.run(["zfs", "set", f"{prop}={value}", target])


def discover_datasets(prop: str, executor: "Executor") -> list[str]:
    """Return every filesystem whose property prop is 'true'."""
    names = _lines(executor.run(["zfs", "list", "-H", "-t", FILESYSTEM, "-o", "name", "-r"]))
    return [name for name in names if get_property(name, prop, executor) == "true"]


def send_command(dataset: str, base: str, head: str = "") -> list[str]:
    """Build the send command: full when head is empty, else base..head delta."""
    if not head:
        return ["zfs", "send", f"{dataset}@{base}"]
    return ["zfs", "send", "-i", f"{dataset}@{base}", f"{dataset}@{head}"]


def receive_command(dataset: str, snapshot: str) -> list[str]:
    return ["zfs", "recv", "-F", f"{dataset}@{snapshot}"]


def send_stream(
    dataset: str,
    base: str,
    head: str,
    executor: "Executor",
) -> subprocess.Popen:
    """Start zfs send; the stream is the returned process's stdout."""
    cmd = send_command(dataset, base, head)
    logger.debug("[send (%s)] %s", executor.label, shlex.join(cmd))
    try:
        return executor.popen(cmd, stdout=subprocess.PIPE)
    except OSError as e:
        raise ExecutorError(cmd, 1, str(e)) from e


def receive_stream(
    dataset: str,
    snapshot: str,
    stream,
    executor: "Executor",
) -> subprocess.Popen:
    """Start zfs recv reading from stream (a pipe or file object)."""
    cmd = receive_command(dataset, snapshot)
    logger.debug("[recv (%s)] %s", executor.label, shlex.join(cmd))
    try:
        return executor.popen(cmd, stdin=stream)
    except OSError as e:
        raise ExecutorError(cmd, 1, str(e)) from e


def transfer(
    src_dataset: str,
    base: str,
    head: str,
    src_executor: "Executor",
    dst_dataset: str,
    dst_snapshot: str,
    dst_executor: "Executor",
) -> None:
    """
    Pipe a full (head == "") or incremental send into a receive on dst.

    Uses: zfs send [-i src@base] src@head | [ssh] zfs recv -F dst@dst_snapshot

    Bytes flow process to process; a slow receiver back-pressures the sender.
    Both processes must exit 0.
    """
    send_proc = send_stream(src_dataset, base, head, src_executor)
    try:
        recv_proc = receive_stream(dst_dataset, dst_snapshot, send_proc.stdout, dst_executor)
    except ExecutorError:
        send_proc.kill()
        send_proc.wait()
        raise
    # Allow send_proc to receive SIGPIPE if recv_proc dies
    send_proc.stdout.close()

    recv_rc = recv_proc.wait()
    send_rc = send_proc.wait()

    if send_rc != 0 or recv_rc != 0:
        send_cmd = send_command(src_dataset, base, head)
        recv_cmd = receive_command(dst_dataset, dst_snapshot)
        raise ExecutorError(
            send_cmd + ["|"] + recv_cmd,
            max(send_rc, recv_rc),
            f"send exited {send_rc}, recv exited {recv_rc}",
        )
