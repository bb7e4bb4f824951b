# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Archive pg_stat_statements snapshots and report on them.

The console entry point lives in :mod:`stat_statements.cli`; the
building blocks (bootstrap, snapshot, report) can also be driven
directly against any :class:`~stat_statements.store.Store`.
"""

from stat_statements.bootstrap import ensure_environment
from stat_statements.config import StatConfig
from stat_statements.report import ReportRow, StatementRecord, build_report, format_report
from stat_statements.snapshot import SnapshotResult, take_snapshot

__version__ = "0.3.0"

__all__: list[str] = [
    "ReportRow",
    "SnapshotResult",
    "StatConfig",
    "StatementRecord",
    "build_report",
    "ensure_environment",
    "format_report",
    "take_snapshot",
]
