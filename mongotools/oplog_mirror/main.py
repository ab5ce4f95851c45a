"""
Oplog mirror - command line entry point.

Polls operations from the replication oplog of one server and applies
them to another.

Usage:
    oplog-mirror --from <source host> [--host <destination>] [options]

Every option can also be given through environment variables (see
config.py); command line values win.

Invariants:
    - Configuration is validated before any connection is attempted
    - SIGINT/SIGTERM flush the buffered batch and stop cleanly
    - Exit code 0 on a clean stop, 1 on any error

How to change safely:
    - Add new options to both the parser and config_from_args
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace

import json_log_formatter

from . import __version__
from .config import LOG_FORMATS, MirrorConfig
from .errors import ConfigurationError, MirrorError
from .oplog.base import TRACE
from .pipeline import OplogMirror

logger = logging.getLogger(__name__)


def setup_logging(config: MirrorConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Mirror configuration
    """
    level = logging.getLevelName(config.observability.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("pymongo").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    """Command line options."""
    parser = argparse.ArgumentParser(
        prog="oplog-mirror",
        description="Poll operations from the replication oplog of one server "
        "and apply them to another",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    source = parser.add_argument_group("source options")
    source.add_argument("--from", dest="from_host", help="host to pull from")
    source.add_argument("--oplogns", help="ns to pull from (default: local.oplog.rs)")
    source.add_argument(
        "-s", "--seconds", type=int, help="seconds to go back (default: 86400)"
    )
    source.add_argument(
        "--idle-wait", type=float, help="seconds to wait for new oplog entries (default: 600)"
    )

    dest = parser.add_argument_group("destination options")
    dest.add_argument("--host", help="mongodb host to apply to, e.g. setname/host1,host2")
    dest.add_argument("--port", type=int, help="server port")
    dest.add_argument("-u", "--username", help="username for authentication")
    dest.add_argument("-p", "--password", help="password for authentication")
    dest.add_argument(
        "--authenticationDatabase", dest="auth_database", help="database that holds the user's credentials"
    )

    batching = parser.add_argument_group("batching options")
    batching.add_argument("--batch-size", type=int, help="entries per applyOps (default: 10000)")
    batching.add_argument(
        "--flush-interval", type=float, help="seconds between partial batch flushes (default: 5)"
    )

    output = parser.add_argument_group("output options")
    output.add_argument(
        "-v", "--verbose", action="count", default=0, help="more detailed log output (-vv for trace)"
    )
    output.add_argument("--quiet", action="store_true", help="only log warnings and errors")
    output.add_argument("--log-format", choices=LOG_FORMATS, help="log output format")

    return parser


def config_from_args(args: argparse.Namespace, base: MirrorConfig) -> MirrorConfig:
    """Overlay command line values on an environment-derived configuration."""

    def pick(value, default):
        return default if value is None else value

    destination = replace(
        base.destination,
        host=pick(args.host, base.destination.host),
        port=pick(args.port, base.destination.port),
        username=pick(args.username, base.destination.username),
        password=pick(args.password, base.destination.password),
        auth_database=pick(args.auth_database, base.destination.auth_database),
    )
    source = replace(
        base.source,
        from_host=pick(args.from_host, base.source.from_host),
        oplog_ns=pick(args.oplogns, base.source.oplog_ns),
        seconds=pick(args.seconds, base.source.seconds),
        idle_wait_seconds=pick(args.idle_wait, base.source.idle_wait_seconds),
    )
    batch = replace(
        base.batch,
        max_batch_size=pick(args.batch_size, base.batch.max_batch_size),
        flush_interval_seconds=pick(args.flush_interval, base.batch.flush_interval_seconds),
    )

    log_level = base.observability.log_level
    if args.quiet:
        log_level = "WARNING"
    elif args.verbose >= 2:
        log_level = logging.getLevelName(TRACE)
    elif args.verbose == 1:
        log_level = "DEBUG"

    observability = replace(
        base.observability,
        log_level=log_level,
        log_format=pick(args.log_format, base.observability.log_format),
    )

    return MirrorConfig(
        destination=destination,
        source=source,
        batch=batch,
        observability=observability,
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = config_from_args(args, MirrorConfig.from_env())
        config.validate()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)
    config.log_config()

    mirror = OplogMirror.from_config(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        mirror.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    exit_code = 0
    try:
        stats = loop.run_until_complete(mirror.run())
        logger.info(
            f"done, {stats.applied_total} oplog entries applied in {stats.batches_applied} batches"
        )
    except MirrorError as e:
        print(f"Failed: {e}", file=sys.stderr)
        exit_code = 1
    finally:
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
