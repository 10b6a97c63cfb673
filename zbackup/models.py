"""Data models for zbackup."""
from __future__ import annotations

import socket
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from zbackup.executor import Executor


@dataclass(frozen=True, order=True)
class Snapshot:
    """A ZFS snapshot: pool/dataset@name."""
    dataset: str
    name: str  # just the snapshot name after '@'

    @property
    def full_name(self) -> str:
        return f"{self.dataset}@{self.name}"

    @classmethod
    def parse(cls, full_name: str) -> "Snapshot":
        dataset, _, name = full_name.partition("@")
        if not name:
            raise ValueError(f"Not a snapshot: {full_name!r}")
        return cls(dataset=dataset, name=name)


@dataclass(frozen=True)
class Naming:
    """Snapshot naming constants shared by planner, protocol and retention.

    The timestamp format is fixed width and zero padded, so snapshot names
    built from it sort chronologically as plain strings.
    """
    baseline: str = "zbackup_curr"
    pending: str = "zbackup_new"
    timestamp_format: str = "%Y-%m-%dT%H:%M"
    tag: str = "zbackup:"
    hostname: str = field(default_factory=socket.gethostname)

    def stamp(self, when: datetime) -> str:
        return when.strftime(self.timestamp_format)

    def parse_stamp(self, name: str) -> datetime:
        return datetime.strptime(name, self.timestamp_format)


@dataclass(frozen=True)
class BackupSpec:
    """One [backup] section: a dataset pattern and where it goes."""
    source: str                  # dataset name, or pattern containing '*'
    destination_root: str
    recursive: bool = False
    destination_prefix: str = ""
    retention: str = ""          # "", "lastone" or a duration such as "24h"
    local_mode: bool = False
    host: str | None = None
    user: str | None = None
    key: str | None = None

    @property
    def is_wildcard(self) -> bool:
        return "*" in self.source


@dataclass(frozen=True)
class BackupTask:
    id: int
    source: str
    destination: str
    retention: str
    src_executor: "Executor" = field(compare=False, repr=False)
    dst_executor: "Executor" = field(compare=False, repr=False)
    is_local: bool = False


@dataclass
class Config:
    specs: list[BackupSpec]
    threads: int = 1
