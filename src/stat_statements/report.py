# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Aggregate archived statement statistics into a ranked report.

The pipeline mirrors the server-side ``_stat_statements_get_report``
function: group by query text, compute each group's share of the
window totals, rank, fold everything past ``limit`` into a single
``other`` row and format one block per row.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from stat_statements.config import ORDER_BY_CALLS, ORDER_BY_TIME, StatConfig
from stat_statements.errors import ReportError, StoreError

log = logging.getLogger(__name__)

OTHER_QUERY = "other"

THOUSANDTHS = Decimal("0.001")
HUNDREDTHS = Decimal("0.01")

BLOCK_TEMPLATE = (
    "pos: {rank}\n"
    "time: {time_percent}%, {time} ms, {time_avg} ms avg\n"
    "calls: {calls_percent}%, {calls}\n"
    "rows: {rows}, {rows_avg} avg\n"
    "users: {users}\n"
    "dbs: {dbs}\n"
    "\n"
    "{query}"
)

CSV_COLUMNS = [
    "pos",
    "time_percent",
    "time_ms",
    "time_avg_ms",
    "calls_percent",
    "calls",
    "rows",
    "rows_avg",
    "users",
    "dbs",
    "query",
]


@dataclass(frozen=True)
class StatementRecord:
    """One archived pg_stat_statements row."""

    created: datetime
    query: str
    total_time: float
    rows: int
    calls: int
    user: Optional[str] = None
    dbname: Optional[str] = None


@dataclass
class ReportRow:
    rank: int
    query: str
    time: Decimal
    time_percent: Decimal
    time_avg: Decimal
    calls: int
    calls_percent: Decimal
    rows: int
    rows_avg: Decimal
    users: List[str] = field(default_factory=list)
    dbs: List[str] = field(default_factory=list)

    @property
    def is_other(self) -> bool:
        return self.query == OTHER_QUERY


@dataclass
class _Group:
    query: str
    time: float = 0.0
    rows: int = 0
    calls: int = 0
    users: List[str] = field(default_factory=list)
    dbs: List[str] = field(default_factory=list)


def _round(value: float, quantum: Decimal) -> Decimal:
    # PostgreSQL numeric casts round half away from zero.
    return Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP)


def _ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator


def validate_report_params(since: datetime, till: datetime, limit: int, order: int) -> None:
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ReportError(f"limit must be an integer, got {limit!r}")
    if limit < 1:
        raise ReportError(f"limit must be positive, got {limit}")
    if order not in (ORDER_BY_TIME, ORDER_BY_CALLS):
        raise ReportError(f"order must be {ORDER_BY_TIME} (time) or {ORDER_BY_CALLS} (calls), got {order!r}")
    if since > till:
        raise ReportError(f"since ({since.isoformat()}) is later than till ({till.isoformat()})")


def in_window(record: StatementRecord, since: datetime, till: datetime) -> bool:
    """Lower bound exclusive, upper bound inclusive."""
    return since < record.created <= till


def group_records(records: Iterable[StatementRecord]) -> List[_Group]:
    groups: Dict[str, _Group] = {}
    for record in records:
        group = groups.get(record.query)
        if group is None:
            group = groups[record.query] = _Group(query=record.query)
        group.time += record.total_time
        group.rows += record.rows
        group.calls += record.calls
        if record.user is not None:
            group.users.append(record.user)
        if record.dbname is not None:
            group.dbs.append(record.dbname)
    return list(groups.values())


def rank_groups(groups: Sequence[_Group], order: int) -> List[_Group]:
    """Sort descending by the order key; equal keys fall back to query text."""
    if order == ORDER_BY_CALLS:
        return sorted(groups, key=lambda g: (-g.calls, g.query))
    return sorted(groups, key=lambda g: (-g.time, g.query))


def _merge_row(rank: int, query: str, members: Sequence[_Group], total_time: float, total_calls: int) -> ReportRow:
    time = sum(g.time for g in members)
    calls = sum(g.calls for g in members)
    rows = sum(g.rows for g in members)
    time_percent = sum(100 * _ratio(g.time, total_time) for g in members)
    calls_percent = sum(100 * _ratio(g.calls, total_calls) for g in members)
    users = sorted({user for g in members for user in g.users})
    dbs = sorted({db for g in members for db in g.dbs})
    return ReportRow(
        rank=rank,
        query=query,
        time=_round(time, THOUSANDTHS),
        time_percent=_round(time_percent, HUNDREDTHS),
        time_avg=_round(_ratio(time, calls), THOUSANDTHS),
        calls=calls,
        calls_percent=_round(calls_percent, HUNDREDTHS),
        rows=rows,
        rows_avg=_round(_ratio(rows, calls), THOUSANDTHS),
        users=users,
        dbs=dbs,
    )


def build_report(
    records: Iterable[StatementRecord],
    since: datetime,
    till: datetime,
    limit: int,
    order: int = ORDER_BY_TIME,
) -> List[ReportRow]:
    validate_report_params(since, till, limit, order)

    groups = group_records(r for r in records if in_window(r, since, till))
    total_time = sum(g.time for g in groups)
    total_calls = sum(g.calls for g in groups)
    if total_calls == 0:
        log.debug("no calls between %s and %s", since, till)
        return []

    ranked = rank_groups(groups, order)
    report = [
        _merge_row(rank, group.query, [group], total_time, total_calls)
        for rank, group in enumerate(ranked[:limit], start=1)
    ]
    overflow = ranked[limit:]
    if overflow:
        report.append(_merge_row(limit + 1, OTHER_QUERY, overflow, total_time, total_calls))
    log.debug("report has %d groups, %d listed", len(ranked), len(report))
    return report


def format_row(row: ReportRow) -> str:
    return BLOCK_TEMPLATE.format(
        rank=row.rank,
        time_percent=row.time_percent,
        time=row.time,
        time_avg=row.time_avg,
        calls_percent=row.calls_percent,
        calls=row.calls,
        rows=row.rows,
        rows_avg=row.rows_avg,
        users=", ".join(row.users),
        dbs=", ".join(row.dbs),
        query=row.query,
    )


def format_report(rows: Sequence[ReportRow]) -> str:
    return "\n\n".join(format_row(row) for row in rows)


def format_csv(rows: Sequence[ReportRow]) -> str:
    if not rows:
        return ""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for row in rows:
        writer.writerow([
            row.rank,
            f"{row.time_percent}",
            f"{row.time}",
            f"{row.time_avg}",
            f"{row.calls_percent}",
            row.calls,
            row.rows,
            f"{row.rows_avg}",
            " ".join(row.users),
            " ".join(row.dbs),
            row.query,
        ])
    return buffer.getvalue().rstrip("\n")


def generate_report(store, config: StatConfig) -> str:
    """Produce the report text for ``config``'s window using ``store``.

    Parameters are validated before the store is queried. An empty
    window yields an empty string.
    """
    validate_report_params(config.since, config.till, config.limit, config.order)
    try:
        if config.engine == "sql":
            return store.server_report(config.since, config.till, config.limit, config.order)
        records = store.fetch_records(config.since, config.till)
    except StoreError as exc:
        raise ReportError(str(exc)) from exc

    rows = build_report(records, config.since, config.till, config.limit, config.order)
    if config.output_format == "csv":
        return format_csv(rows)
    return format_report(rows)
