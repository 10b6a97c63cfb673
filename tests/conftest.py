"""MockExecutor, FakeZfs and shared fixtures for testing."""
from __future__ import annotations

import io
import itertools
import subprocess
import threading
from unittest.mock import MagicMock

import pytest

from zbackup.executor import ExecutorError
from zbackup.models import BackupTask, Naming


def _proc(stdout: bytes = b"", returncode: int = 0) -> MagicMock:
    mock_proc = MagicMock(spec=subprocess.Popen)
    mock_proc.stdout = io.BytesIO(stdout)
    mock_proc.stdin = io.BytesIO(b"")
    mock_proc.returncode = returncode
    mock_proc.wait.return_value = returncode
    return mock_proc


class MockExecutor:
    """
    Executor that returns pre-scripted responses for commands.

    responses: dict mapping tuple(cmd) -> stdout string (or an exception to raise)
    If the command isn't found, raises KeyError (to catch unexpected calls in tests).
    """

    def __init__(self, responses: dict | None = None, label: str = "mock"):
        self.responses: dict = responses or {}
        self._label = label
        self.calls: list[list[str]] = []  # record of all commands run
        self.popen_kwargs: list[dict] = []

    @property
    def label(self) -> str:
        return self._label

    def run(self, cmd: list[str]) -> str:
        self.calls.append(cmd)
        key = tuple(cmd)
        if key not in self.responses:
            raise KeyError(f"MockExecutor: unexpected command: {cmd}")
        result = self.responses[key]
        if isinstance(result, Exception):
            raise result
        return result

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        """Record the call and return a mock Popen that succeeds immediately."""
        self.calls.append(cmd)
        self.popen_kwargs.append(kwargs)
        return _proc()


_guids = itertools.count(100000)

MISSING = "dataset does not exist"


class FakeZfs:
    """
    Executor that interprets zfs command lines against an in-memory pool.

    Snapshots carry a guid that survives send | recv, so tests can tell a
    rename from a copy. An incremental stream is only received by a dataset
    holding its base. fail(*prefix) makes any command starting with prefix
    fail: run() raises ExecutorError, popen() returns a process exiting 1.
    """

    def __init__(self, datasets: tuple[str, ...] = (), label: str = "fake"):
        self._label = label
        self.datasets: dict[str, dict[str, str]] = {name: {} for name in datasets}
        self.snapshots: dict[str, dict[str, str]] = {}  # creation order
        self.calls: list[list[str]] = []
        self.failures: dict[tuple[str, ...], str] = {}
        self._lock = threading.Lock()

    @property
    def label(self) -> str:
        return self._label

    # --- setup / inspection helpers ---

    def add_snapshot(self, full_name: str, **props: str) -> str:
        dataset = full_name.split("@")[0]
        self.datasets.setdefault(dataset, {})
        props.setdefault("guid", str(next(_guids)))
        self.snapshots[full_name] = dict(props)
        return props["guid"]

    def snapshot_names(self, dataset: str) -> list[str]:
        return [s.split("@")[1] for s in self.snapshots if s.split("@")[0] == dataset]

    def guid(self, full_name: str) -> str:
        return self.snapshots[full_name]["guid"]

    def fail(self, *prefix: str, stderr: str = "injected failure") -> None:
        self.failures[prefix] = stderr

    def mutations(self) -> list[list[str]]:
        return [c for c in self.calls if c[1] not in ("list", "get")]

    # --- executor protocol ---

    def _failure(self, cmd: list[str]) -> str | None:
        for prefix, stderr in self.failures.items():
            if tuple(cmd[:len(prefix)]) == prefix:
                return stderr
        return None

    def run(self, cmd: list[str]) -> str:
        with self._lock:
            self.calls.append(list(cmd))
            stderr = self._failure(cmd)
            if stderr is not None:
                raise ExecutorError(cmd, 1, stderr)
            handler = getattr(self, f"_zfs_{cmd[1]}")
            return handler(cmd, cmd[2:])

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        with self._lock:
            self.calls.append(list(cmd))
            if self._failure(cmd) is not None:
                if kwargs.get("stdin") is not None:
                    kwargs["stdin"].read()
                return _proc(returncode=1)
            if cmd[1] == "send":
                return self._send(cmd[2:])
            return self._recv(cmd[2:], kwargs["stdin"])

    # --- command implementations ---

    def _missing(self, cmd: list[str], name: str):
        return ExecutorError(cmd, 1, f"cannot open '{name}': {MISSING}")

    def _zfs_list(self, cmd, args):
        kind, recursive, target = "filesystem", False, None
        it = iter(args)
        for arg in it:
            if arg == "-t":
                kind = next(it)
            elif arg == "-o":
                next(it)
            elif arg == "-r":
                recursive = True
            elif arg == "-H":
                continue
            else:
                target = arg

        if target and "@" in target:
            if target not in self.snapshots:
                raise self._missing(cmd, target)
            return target + "\n"
        if target and target not in self.datasets:
            raise self._missing(cmd, target)

        def under(name: str) -> bool:
            if target is None:
                return True
            return name == target or (recursive and name.startswith(target + "/"))

        if kind == "snapshot":
            names = [s for s in self.snapshots if under(s.split("@")[0])]
        else:
            names = [d for d in sorted(self.datasets) if under(d)]
        return "".join(n + "\n" for n in names)

    def _zfs_snapshot(self, cmd, args):
        full = args[0]
        dataset = full.split("@")[0]
        if dataset not in self.datasets:
            raise self._missing(cmd, dataset)
        if full in self.snapshots:
            raise ExecutorError(cmd, 1, f"cannot create snapshot '{full}': dataset already exists")
        self.snapshots[full] = {"guid": str(next(_guids))}
        return ""

    def _zfs_destroy(self, cmd, args):
        target = args[-1]
        if target in self.snapshots:
            del self.snapshots[target]
        elif target in self.datasets:
            del self.datasets[target]
        else:
            raise self._missing(cmd, target)
        return ""

    def _zfs_rename(self, cmd, args):
        old, new = args
        if old not in self.snapshots:
            raise self._missing(cmd, old)
        if new in self.snapshots:
            raise ExecutorError(cmd, 1, f"cannot rename to '{new}': dataset already exists")
        self.snapshots = {
            (new if name == old else name): props for name, props in self.snapshots.items()
        }
        return ""

    def _props(self, cmd, target):
        if target in self.snapshots:
            return self.snapshots[target]
        if target in self.datasets:
            return self.datasets[target]
        raise self._missing(cmd, target)

    def _zfs_get(self, cmd, args):
        prop, target = args[-2], args[-1]
        return self._props(cmd, target).get(prop, "-") + "\n"

    def _zfs_set(self, cmd, args):
        assignment, target = args
        prop, _, value = assignment.partition("=")
        self._props(cmd, target)[prop] = value
        return ""

    def _send(self, args):
        head = args[-1]
        if head not in self.snapshots or (args[0] == "-i" and args[1] not in self.snapshots):
            return _proc(returncode=1)
        stream = self.snapshots[head]["guid"]
        if args[0] == "-i":
            stream = f"{self.snapshots[args[1]]['guid']}>{stream}"
        return _proc(stdout=stream.encode())

    def _recv(self, args, stdin):
        """An incremental stream ('base>head') needs base on the target dataset."""
        base, _, guid = stdin.read().decode().rpartition(">")
        full = args[-1]
        dataset = full.split("@")[0]
        if not guid:
            return _proc(returncode=1)
        if base:
            if dataset not in self.datasets:
                return _proc(returncode=1)
            received = [p["guid"] for s, p in self.snapshots.items() if s.split("@")[0] == dataset]
            if base not in received:
                return _proc(returncode=1)
        self.datasets.setdefault(dataset, {})
        self.snapshots[full] = {"guid": guid}
        return _proc()


@pytest.fixture
def naming():
    return Naming(hostname="db1")


@pytest.fixture
def src():
    return FakeZfs(datasets=("tank", "tank/home", "tank/home/user", "tank/var"), label="src")


@pytest.fixture
def dst():
    return FakeZfs(datasets=("backup",), label="dst")


def make_task(src, dst, source="tank/home", destination="backup/db1-tank-home",
              retention="", task_id=0) -> BackupTask:
    return BackupTask(
        id=task_id,
        source=source,
        destination=destination,
        retention=retention,
        src_executor=src,
        dst_executor=dst,
    )
