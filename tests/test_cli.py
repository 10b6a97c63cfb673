"""Tests for zbackup.cli module."""
from __future__ import annotations

import os
import textwrap

import pytest

from zbackup import cli
from tests.conftest import FakeZfs

CONFIG = """\
localmode: true
threads: 2
backup:
  - fs: tank/home
    dst_pool: backup
    recursive: true
    expire: lastone
"""


@pytest.fixture
def config_path(tmp_path):
    p = tmp_path / "zbackup.yaml"
    p.write_text(textwrap.dedent(CONFIG))
    return str(p)


@pytest.fixture
def fake_host(monkeypatch):
    """Route every LocalExecutor the CLI builds to one in-memory pool."""
    pool = FakeZfs(datasets=("tank", "tank/home", "tank/home/user", "backup"))
    monkeypatch.setattr(cli, "LocalExecutor", lambda: pool)
    monkeypatch.setattr(cli, "setup_logging", lambda *args: None)
    return pool


def _exit_code(argv) -> int:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv)
    return exc_info.value.code


def test_test_mode_validates_and_exits(fake_host, config_path):
    assert _exit_code(["-t", "-c", config_path]) == 0
    assert fake_host.calls == []


def test_config_error_exits_nonzero(fake_host, tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("backup: []\n")
    assert _exit_code(["-c", str(bad)]) == 1


def test_dry_run_prints_mapping(fake_host, config_path, tmp_path, capsys):
    pidfile = tmp_path / "zbackup.pid"
    assert _exit_code(["-n", "-c", config_path, "-p", str(pidfile)]) == 0
    out = capsys.readouterr().out
    assert "tank/home -> backup/" in out
    assert "tank/home/user -> backup/" in out
    assert fake_host.mutations() == []
    assert not pidfile.exists()


def test_backup_run_removes_pidfile(fake_host, config_path, tmp_path):
    pidfile = tmp_path / "zbackup.pid"
    assert _exit_code(["-c", config_path, "-p", str(pidfile)]) == 0
    assert not pidfile.exists()
    assert fake_host.snapshot_names("tank/home") == ["zbackup_curr"]
    assert fake_host.snapshot_names("tank/home/user") == ["zbackup_curr"]


def test_existing_pidfile_refuses_to_run(fake_host, config_path, tmp_path):
    pidfile = tmp_path / "zbackup.pid"
    pidfile.write_text("12345")
    assert _exit_code(["-c", config_path, "-p", str(pidfile)]) == 1
    assert fake_host.mutations() == []
    assert pidfile.read_text() == "12345"


def test_property_mode_requires_host(fake_host):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["-u", "zbackup:"])
    assert exc_info.value.code == 2


def test_property_mode_without_tagged_filesystems_fails(fake_host, tmp_path):
    pidfile = tmp_path / "zbackup.pid"
    assert _exit_code(["-u", "zbackup:", "--host", "backup", "-p", str(pidfile)]) == 1
    assert fake_host.mutations() == []
    assert not pidfile.exists()


def test_pidfile_helpers(tmp_path):
    path = str(tmp_path / "zbackup.pid")
    cli.create_pidfile(path)
    assert open(path).read() == str(os.getpid())
    with pytest.raises(FileExistsError):
        cli.create_pidfile(path)
    assert cli.remove_pidfile(path) is True
    assert cli.remove_pidfile(path) is False
