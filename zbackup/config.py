"""Load and validate YAML backup configuration files."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import yaml

from zbackup import zfs
from zbackup.executor import ExecutorError
from zbackup.models import BackupSpec, Config
from zbackup.retention import validate_policy

if TYPE_CHECKING:
    from zbackup.executor import Executor

logger = logging.getLogger(__name__)

TRANSPORT_FIELDS = ("host", "user", "key")


class ConfigError(Exception):
    pass


def _threads(value) -> int:
    try:
        threads = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'threads' must be an integer, got {value!r}")
    if threads < 1:
        logger.warning("'threads' less than 1, set to 1")
        threads = 1
    return threads


def _policy(value, where: str) -> str:
    policy = "" if value is None else str(value).strip()
    try:
        validate_policy(policy)
    except ValueError as e:
        raise ConfigError(f"{where}: 'expire' must be 'lastone' or a duration like '24h': {e}")
    return policy


def _load_spec(raw: dict, index: int, defaults: dict) -> BackupSpec | None:
    """Build one spec; returns None for a section that must be skipped."""
    where = f"backup[{index}]"
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: must be a mapping")

    fs = str(raw.get("fs") or "").strip()
    if not fs:
        raise ConfigError(f"{where}: 'fs' is required")
    dst_pool = str(raw.get("dst_pool") or "").strip()
    if not dst_pool:
        raise ConfigError(f"{where}: 'dst_pool' is required")

    local_mode = raw.get("localmode")
    if local_mode is None:
        local_mode = defaults["localmode"]
    local_mode = bool(local_mode)

    transport = {}
    if local_mode:
        clashing = [f for f in TRANSPORT_FIELDS if raw.get(f)]
        if clashing:
            logger.warning(
                "%s (%s): '%s' and 'localmode' are mutually exclusive, skip this section",
                where, fs, clashing[0],
            )
            return None
        transport = dict.fromkeys(TRANSPORT_FIELDS)
    else:
        for f in TRANSPORT_FIELDS:
            transport[f] = raw.get(f) or defaults[f]
            if not transport[f]:
                raise ConfigError(f"{where} ({fs}): '{f}' not declared")

    prefix = str(raw.get("remote_prefix") or "").strip()
    if prefix:
        logger.warning(
            "%s (%s): 'remote_prefix' set; fs with this name on the destination may be overwritten",
            where, fs,
        )

    return BackupSpec(
        source=fs,
        destination_root=dst_pool,
        recursive=bool(raw.get("recursive", False)),
        destination_prefix=prefix,
        retention=_policy(raw.get("expire"), where),
        local_mode=local_mode,
        host=transport["host"],
        user=transport["user"],
        key=transport["key"],
    )


def load_config(path: str) -> Config:
    with open(path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")

    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping: {path}")

    # --- global transport ---
    local_mode = bool(raw.get("localmode", False))
    if local_mode:
        for f in TRANSPORT_FIELDS:
            if raw.get(f):
                raise ConfigError(f"'{f}' and 'localmode' are mutually exclusive")
    defaults = {f: raw.get(f) for f in TRANSPORT_FIELDS}
    defaults["localmode"] = local_mode

    # --- backup sections ---
    sections = raw.get("backup") or []
    if not isinstance(sections, list) or not sections:
        raise ConfigError("'backup' list is required")
    specs = []
    for i, section in enumerate(sections):
        spec = _load_spec(section, i, defaults)
        if spec is not None:
            specs.append(spec)
    if not specs:
        raise ConfigError("no usable 'backup' sections")

    return Config(specs=specs, threads=_threads(raw.get("threads", 1)))


def config_from_property(
    prop: str,
    src_executor: "Executor",
    remote: str = "zroot",
    expire: str = "24h",
    host: str | None = None,
    user: str | None = "root",
    key: str | None = "/root/.ssh/id_rsa",
    threads: int = 5,
    local_mode: bool = False,
) -> Config:
    """Build a config backing up every source filesystem where prop=true."""
    if not local_mode and not host:
        raise ConfigError("'host' is required for property-based backup")
    policy = _policy(expire, "--expire")
    try:
        datasets = zfs.discover_datasets(prop, src_executor)
    except ExecutorError as e:
        raise ConfigError(f"cannot scan datasets for {prop}: {e}")

    if not datasets:
        raise ConfigError(f"no filesystems with {prop}=true found")
    specs = [
        BackupSpec(
            source=name,
            destination_root=remote,
            retention=policy,
            local_mode=local_mode,
            host=None if local_mode else host,
            user=None if local_mode else user,
            key=None if local_mode else key,
        )
        for name in datasets
    ]
    return Config(specs=specs, threads=_threads(threads))
