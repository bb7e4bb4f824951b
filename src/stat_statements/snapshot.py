# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Archive the live counters and reset them.

Resetting is destructive: anything accumulated since the previous
snapshot and not archived is lost. Rows are committed to the archive
before the reset runs, so a failed reset leaves a valid snapshot behind
(the next snapshot will then count those calls again) while a failed
insert never reaches the reset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from stat_statements.errors import SnapshotError, StoreError

log = logging.getLogger(__name__)

TICK = timedelta(microseconds=1)


@dataclass(frozen=True)
class SnapshotResult:
    created: datetime
    rows: int


def _next_timestamp(store, now: datetime) -> datetime:
    latest = store.latest_snapshot()
    if latest is not None and now <= latest:
        log.warning("clock is not past the latest snapshot %s; using %s", latest.isoformat(), (latest + TICK).isoformat())
        return latest + TICK
    return now


def take_snapshot(store, now: Optional[datetime] = None) -> SnapshotResult:
    now = now or datetime.now(timezone.utc)
    try:
        with store.snapshot_lock():
            created = _next_timestamp(store, now)
            rows = store.archive(created)
            log.info("archived %d statements at %s", rows, created.isoformat())
            try:
                store.reset()
            except StoreError as exc:
                raise SnapshotError(
                    f"snapshot {created.isoformat()} was archived but counters were not reset: {exc}",
                    archived=True,
                ) from exc
    except StoreError as exc:
        raise SnapshotError(str(exc)) from exc

    log.info("pg_stat_statements counters reset after snapshot %s", created.isoformat())
    return SnapshotResult(created=created, rows=rows)
