"""CLI entry point for zbackup."""
from __future__ import annotations

import argparse
import logging
import os
import sys

from rich.console import Console
from rich.logging import RichHandler

from zbackup import scheduler
from zbackup.config import ConfigError, config_from_property, load_config
from zbackup.executor import LocalExecutor
from zbackup.models import Naming
from zbackup.planner import ExecutorFactory, plan

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "/etc/zbackup/zbackup.yaml"
DEFAULT_PIDFILE = "/var/run/zbackup.pid"
LOG_FORMAT = "%(asctime)s %(process)d %(levelname)-8s %(message)s"
LOG_LEVELS = {"info": logging.INFO, "debug": logging.DEBUG}


def setup_logging(level: str, logfile: str = "stderr") -> None:
    """Send log records to a rich console on stderr, or append to logfile."""
    if logfile == "stderr":
        handler: logging.Handler = RichHandler(console=Console(stderr=True), show_path=False)
        fmt = "%(message)s"
    else:
        handler = logging.FileHandler(logfile)
        fmt = LOG_FORMAT
    logging.basicConfig(
        format=fmt,
        level=LOG_LEVELS[level],
        handlers=[handler],
        force=True,
    )


def create_pidfile(path: str) -> None:
    """Write our pid to path. Raises FileExistsError if another run holds it."""
    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    with os.fdopen(fd, "w") as f:
        f.write(str(os.getpid()))


def remove_pidfile(path: str) -> bool:
    try:
        os.remove(path)
    except OSError as e:
        logger.error("cannot remove pidfile: %s", e)
        return False
    return True


def _load(args):
    if args.property:
        return config_from_property(
            args.property,
            LocalExecutor(),
            remote=args.remote,
            expire=args.expire,
            host=args.host,
            user=args.user,
            key=args.key,
            threads=args.threads,
        )
    return load_config(args.config or DEFAULT_CONFIG)


def cmd_backup(args) -> int:
    try:
        setup_logging(args.log_level, args.logfile)
    except OSError as e:
        print(f"Cannot open log file: {e}", file=sys.stderr)
        return 1

    try:
        config = _load(args)
    except (ConfigError, OSError) as e:
        logger.error("error loading config: %s", e)
        return 1

    if args.test:
        logger.info("configuration ok: %d backup section(s), %d thread(s)",
                    len(config.specs), config.threads)
        return 0

    naming = Naming()
    src_exec = LocalExecutor()
    tasks = plan(config.specs, src_exec, naming, ExecutorFactory(local=src_exec))
    if not tasks:
        logger.warning("no backup tasks")
        return 0

    if args.dry_run:
        return scheduler.run(tasks, config.threads, naming, dry_run_only=True)

    try:
        create_pidfile(args.pidfile)
    except FileExistsError:
        logger.error("cannot run: %s already exists", args.pidfile)
        return 1
    except OSError as e:
        logger.error("cannot create pidfile: %s", e)
        return 1

    try:
        rc = scheduler.run(tasks, config.threads, naming)
    finally:
        removed = remove_pidfile(args.pidfile)
    return rc if removed else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zbackup",
        description="Incremental ZFS snapshot backups to a local or remote pool",
    )
    parser.add_argument("-t", "--test", action="store_true",
                        help="Test configuration and exit")
    parser.add_argument("--dry-run", "-n", action="store_true",
                        help="Print source -> destination for every task and exit")
    parser.add_argument("-p", "--pidfile", default=DEFAULT_PIDFILE,
                        help=f"Pidfile (default: {DEFAULT_PIDFILE})")
    parser.add_argument("-v", "--log-level", choices=sorted(LOG_LEVELS), default="info",
                        help="Log level (default: info)")
    parser.add_argument("-l", "--logfile", default="stderr",
                        help="Append log to this file instead of stderr")

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("-c", "--config",
                      help=f"Configuration-based backup (default: {DEFAULT_CONFIG})")
    mode.add_argument("-u", "--property",
                      help="Property-based backup: every filesystem with PROPERTY=true")

    prop = parser.add_argument_group("property-based backup")
    prop.add_argument("--host", help="Backup host: name[:port]")
    prop.add_argument("--user", default="root", help="Backup user (default: root)")
    prop.add_argument("--key", default="/root/.ssh/id_rsa",
                      help="SSH key file (default: /root/.ssh/id_rsa)")
    prop.add_argument("--threads", type=int, default=5,
                      help="Parallel backups (default: 5)")
    prop.add_argument("--remote", default="zroot",
                      help="Destination root filesystem (default: zroot)")
    prop.add_argument("--expire", default="24h",
                      help="Snapshot expiry: 'lastone' or a duration like '24h' (default: 24h)")
    return parser


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.property and not args.host:
        parser.error("--host is required with -u/--property")
    sys.exit(cmd_backup(args))


if __name__ == "__main__":
    main()
