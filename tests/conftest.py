# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Shared test doubles."""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from stat_statements.report import StatementRecord, build_report, format_report
from stat_statements.store import SchemaInfo, Store


@dataclass
class LiveStatement:
    query: str
    user: Optional[str] = None
    dbname: Optional[str] = None
    total_time: float = 0.0
    rows: int = 0
    calls: int = 0


class MemoryStore(Store):
    """Process-local store with pg_stat_statements-like counters."""

    def __init__(self) -> None:
        self.live: Dict[Tuple[str, Optional[str], Optional[str]], LiveStatement] = {}
        self.records: List[StatementRecord] = []
        self.schema: Optional[SchemaInfo] = None
        self.locked = False

    def execute(self, query: str, time: float, rows: int = 0, user: Optional[str] = "postgres",
                dbname: Optional[str] = "postgres", calls: int = 1) -> None:
        """Account ``calls`` executions of ``query`` in the live counters."""
        key = (query, user, dbname)
        stat = self.live.get(key)
        if stat is None:
            stat = self.live[key] = LiveStatement(query=query, user=user, dbname=dbname)
        stat.total_time += time
        stat.rows += rows
        stat.calls += calls

    def ensure_schema(self) -> SchemaInfo:
        if self.schema is None:
            self.schema = SchemaInfo(created=True)
            return self.schema
        return SchemaInfo(created=False, time_column=self.schema.time_column)

    @contextmanager
    def snapshot_lock(self) -> Iterator[None]:
        self.locked = True
        try:
            yield
        finally:
            self.locked = False

    def latest_snapshot(self) -> Optional[datetime]:
        return max((r.created for r in self.records), default=None)

    def archive(self, created: datetime) -> int:
        batch = [
            StatementRecord(
                created=created,
                query=stat.query,
                total_time=stat.total_time,
                rows=stat.rows,
                calls=stat.calls,
                user=stat.user,
                dbname=stat.dbname,
            )
            for stat in self.live.values()
        ]
        self.records.extend(batch)
        return len(batch)

    def reset(self) -> None:
        self.live.clear()

    def fetch_records(self, since: datetime, till: datetime) -> List[StatementRecord]:
        return [r for r in self.records if since < r.created <= till]

    def server_report(self, since: datetime, till: datetime, limit: int, order: int) -> str:
        return format_report(build_report(self.records, since, till, limit, order))
