"""
kvlink CLI Entrypoint

Commands:
    kvlink sweep     Run one expiry/repair pass against the configured store
    kvlink version   Show version info

Usage:
    python -m kvlink sweep --kind session --prune --orphans

    # Against Redis
    KVLINK_STORE_BACKEND=redis REDIS_HOST=redis.internal python -m kvlink sweep
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from typing import NoReturn, Optional

from kvlink.core import constants as C
from kvlink.core.config import ForwardMode, KVLinkConfig
from kvlink.index.registry import create_auth_index
from kvlink.index.sweeper import ExpirySweeper
from kvlink.observability.logging import LogLevel, StructuredLogger, setup_logging
from kvlink.reliability.retry import RetryPolicy, retry_result
from kvlink.storage import create_store
from kvlink.storage.config import BackendType

logger = StructuredLogger("kvlink.cli")


def main(argv: Optional[list[str]] = None) -> NoReturn:
    """Main CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "sweep":
        sys.exit(asyncio.run(_run_sweep(args)))
    elif args.command == "version":
        print(f"kvlink {_get_version()}")
        sys.exit(0)

    parser.print_help()
    sys.exit(0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kvlink",
        description="Owner/dependent index maintenance over a flat key-value store",
    )
    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sweep_parser = subparsers.add_parser("sweep", help="Run one maintenance pass")
    sweep_parser.add_argument(
        "--kind", "-k",
        choices=[C.SESSION_KIND, C.KEY_KIND],
        default=C.SESSION_KIND,
        help=f"Dependent kind to sweep (default: {C.SESSION_KIND})",
    )
    sweep_parser.add_argument(
        "--prune",
        action="store_true",
        help="Also unlink forward entries whose record is gone",
    )
    sweep_parser.add_argument(
        "--orphans",
        action="store_true",
        help="Also delete dependents whose owner no longer exists",
    )

    subparsers.add_parser("version", help="Show version info")
    return parser


def _get_version() -> str:
    """Get package version."""
    try:
        from kvlink import __version__
        return __version__
    except ImportError:
        return "0.0.0-unknown"


async def _run_sweep(args: argparse.Namespace) -> int:
    """Run the requested passes; returns the process exit code."""
    config_result = KVLinkConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}", file=sys.stderr)
        return 2

    config = config_result.unwrap()
    validation = config.validate()
    if validation.is_err():
        print(f"Validation error: {validation.error}", file=sys.stderr)
        return 2

    setup_logging(
        LogLevel.from_name(config.observability.log_level),
        json_output=config.observability.log_json,
    )

    if config.store.backend is BackendType.REDIS and config.engine.forward_mode is ForwardMode.SENTINEL:
        logger.warning(
            "Sentinel forward index on Redis scans the whole keyspace per owner read",
            hint="set KVLINK_FORWARD_MODE=set",
        )

    store = create_store(config.store)
    connected = await store.connect()
    if connected.is_err():
        logger.error("Store connection failed", error=str(connected.error))
        return 1

    policy = RetryPolicy(
        max_attempts=config.reliability.retry_max_attempts,
        base_delay_ms=config.reliability.retry_base_ms,
        max_delay_ms=config.reliability.retry_max_delay_ms,
    )

    try:
        index = create_auth_index(store, config.engine)
        sweeper = ExpirySweeper(index.engine(args.kind), config.sweeper)

        passes = [("sweep", sweeper.sweep)]
        if args.prune:
            passes.append(("prune_dangling", sweeper.prune_dangling))
        if args.orphans:
            passes.append(("prune_orphans", sweeper.prune_orphans))

        with logger.context(kind=args.kind):
            for name, run in passes:
                result = await retry_result(run, policy)
                if result.is_err():
                    logger.error(f"{name} failed", code=result.error.code.name, error=str(result.error))
                    return 1
                print(json.dumps({"pass": name, **asdict(result.unwrap())}))
    finally:
        await store.close()

    return 0


if __name__ == "__main__":
    main()
