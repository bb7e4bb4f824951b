# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Snapshot pg_stat_statements or print a top-N report from the archive.

Connects to STAT_DBNAME and creates the archive table and report
function if needed. Without --snapshot it prints the top STAT_N
queries between STAT_SINCE (exclusive) and STAT_TILL (inclusive),
ranked by total time (STAT_ORDER=0) or by calls (STAT_ORDER=1). With
--snapshot it archives the current statistics and resets them so a new
collection period begins.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Callable, List, Optional, TextIO

from stat_statements.bootstrap import ensure_environment
from stat_statements.config import ENGINES, FORMATS, StatConfig, default_env_path, resolve_config
from stat_statements.errors import ConfigError, StatStatementsError
from stat_statements.report import generate_report, validate_report_params
from stat_statements.snapshot import take_snapshot

PREFIX = "[stat-statements]"

log = logging.getLogger("stat_statements")

LOG_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]


def parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="stat-statements",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--env", type=Path, help="env file with STAT_* / PG* settings (default: ./.env)")
    parser.add_argument("--dsn", help="libpq connection string (STAT_DSN)")
    parser.add_argument("-d", "--dbname", help="database to operate on (STAT_DBNAME)")
    parser.add_argument(
        "--snapshot",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="archive current statistics and RESET the live counters; "
        "unarchived statistics are lost (STAT_SNAPSHOT)",
    )
    parser.add_argument("--since", help="report window start, exclusive (STAT_SINCE)")
    parser.add_argument("--till", help="report window end, inclusive (STAT_TILL)")
    parser.add_argument("-n", "--limit", type=int, help="queries listed individually (STAT_N)")
    parser.add_argument("--order", type=int, choices=[0, 1], help="0 - by time, 1 - by calls (STAT_ORDER)")
    parser.add_argument("--engine", choices=ENGINES, help="aggregate in python or with the installed SQL function")
    parser.add_argument("--format", dest="output_format", choices=FORMATS, help="report output format")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="repeat for more detail")
    return parser.parse_args(argv)


def setup_logging(verbosity: int) -> None:
    level = LOG_LEVELS[min(verbosity, len(LOG_LEVELS) - 1)]
    if not verbosity and os.environ.get("STAT_LOG_LEVEL"):
        level = logging.getLevelName(os.environ["STAT_LOG_LEVEL"].upper())
        if not isinstance(level, int):
            level = logging.WARNING
    log.setLevel(level)
    log.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=f"{PREFIX} [%(levelname)s] %(message)s"))
    log.addHandler(handler)
    log.propagate = False


def fail(exc: StatStatementsError) -> None:
    print(f"{PREFIX} {exc.stage} failed: {exc}", file=sys.stderr)


def run(config: StatConfig, store, out: Optional[TextIO] = None) -> int:
    out = out or sys.stdout
    ensure_environment(store)
    if config.snapshot:
        result = take_snapshot(store)
        log.info("snapshot %s holds %d statements", result.created.isoformat(), result.rows)
        return 0

    text = generate_report(store, config)
    if text:
        print(text, file=out)
    return 0


def _open_store(config: StatConfig):
    from stat_statements.store import PostgresStore

    return PostgresStore.from_config(config)


def main(argv: Optional[List[str]] = None, store_factory: Optional[Callable] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    overrides = {
        "dsn": args.dsn,
        "dbname": args.dbname,
        "snapshot": args.snapshot,
        "since": args.since,
        "till": args.till,
        "limit": args.limit,
        "order": args.order,
        "engine": args.engine,
        "output_format": args.output_format,
    }
    try:
        config = resolve_config(overrides, env_file=args.env or default_env_path())
    except ConfigError as exc:
        fail(exc)
        return 2

    try:
        if not config.snapshot:
            validate_report_params(config.since, config.till, config.limit, config.order)
        factory = store_factory or _open_store
        with factory(config) as store:
            return run(config, store)
    except StatStatementsError as exc:
        fail(exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
