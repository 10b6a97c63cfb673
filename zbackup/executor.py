"""Run zfs commands on the local host or over SSH with key authentication."""
from __future__ import annotations

import shlex
import subprocess
from typing import Protocol, runtime_checkable


class ExecutorError(Exception):
    """A command exited non-zero; stderr is kept for 'does not exist' checks."""
    def __init__(self, cmd: list[str], returncode: int, stderr: str):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command {shlex.join(cmd)!r} exited {returncode}: {stderr.strip()}"
        )


@runtime_checkable
class Executor(Protocol):
    @property
    def label(self) -> str: ...

    def run(self, cmd: list[str]) -> str: ...

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen: ...


def _check_output(cmd: list[str]) -> str:
    result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    if result.returncode != 0:
        raise ExecutorError(cmd, result.returncode, result.stderr)
    return result.stdout


class LocalExecutor:
    """Source side, and the destination side in local mode."""

    label = "local"

    def run(self, cmd: list[str]) -> str:
        return _check_output(cmd)

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        return subprocess.Popen(cmd, text=False, **kwargs)


def split_host(host: str, default_port: int = 22) -> tuple[str, int]:
    """Split 'name:port' into (name, port); a bare name gets default_port."""
    name, sep, port = host.rpartition(":")
    if not sep:
        return host, default_port
    if not port.isdigit():
        raise ValueError(f"Invalid port in host {host!r}")
    return name, int(port)


class SSHExecutor:
    """
    Destination side on a backup host.

    Commands are quoted into a single remote argument. BatchMode keeps an
    unattended run from hanging on a password or passphrase prompt.
    """

    def __init__(
        self,
        host: str,
        user: str | None = None,
        key: str | None = None,
        port: int | None = None,
    ):
        self.host, parsed_port = split_host(host)
        self.user = user
        self.key = key
        self.port = parsed_port if port is None else port

    @property
    def _dest(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    @property
    def label(self) -> str:
        return f"ssh://{self._dest}:{self.port}"

    def _ssh_prefix(self) -> list[str]:
        prefix = ["ssh", "-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new"]
        prefix += ["-p", str(self.port)]
        if self.key:
            prefix += ["-i", self.key]
        return prefix + [self._dest]

    def _remote(self, cmd: list[str]) -> list[str]:
        return self._ssh_prefix() + [shlex.join(cmd)]

    def run(self, cmd: list[str]) -> str:
        return _check_output(self._remote(cmd))

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        return subprocess.Popen(self._remote(cmd), text=False, **kwargs)
