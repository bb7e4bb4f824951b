# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Access to the live counter source and the snapshot archive.

:class:`PostgresStore` drives a real server through psycopg. Backends
raise :class:`~stat_statements.errors.StoreError` with the
underlying error text when an operation fails.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import ContextManager, Dict, Iterator, List, Optional

import psycopg

from stat_statements import sql
from stat_statements.config import StatConfig
from stat_statements.errors import StoreConnectionError, StoreError
from stat_statements.report import StatementRecord

log = logging.getLogger(__name__)

APPLICATION_NAME = "stat_statements"


@dataclass(frozen=True)
class SchemaInfo:
    created: bool
    time_column: str = sql.TIME_COLUMN


class Store(ABC):
    """Interface shared by the storage backends."""

    @abstractmethod
    def ensure_schema(self) -> SchemaInfo:
        ...

    @abstractmethod
    def snapshot_lock(self) -> ContextManager[None]:
        """Serialize snapshot takers for the duration of the block."""

    @abstractmethod
    def latest_snapshot(self) -> Optional[datetime]:
        ...

    @abstractmethod
    def archive(self, created: datetime) -> int:
        """Copy every live row into the archive; returns the row count."""

    @abstractmethod
    def reset(self) -> None:
        ...

    @abstractmethod
    def fetch_records(self, since: datetime, till: datetime) -> List[StatementRecord]:
        ...

    @abstractmethod
    def server_report(self, since: datetime, till: datetime, limit: int, order: int) -> str:
        ...

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


@contextmanager
def _driver_errors() -> Iterator[None]:
    try:
        yield
    except psycopg.Error as exc:
        raise StoreError(str(exc).strip()) from exc


def connect(config: StatConfig) -> psycopg.Connection:
    params: Dict[str, str] = {"application_name": APPLICATION_NAME}
    params.update(config.conn_params)
    if config.dbname:
        params["dbname"] = config.dbname
    log.debug("connecting to %s", config.dbname or "default database")
    try:
        return psycopg.connect(config.dsn, autocommit=True, **params)
    except psycopg.Error as exc:
        raise StoreConnectionError(str(exc).strip()) from exc


class PostgresStore(Store):
    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn
        self._time_column: Optional[str] = None

    @classmethod
    def from_config(cls, config: StatConfig) -> "PostgresStore":
        return cls(connect(config))

    def close(self) -> None:
        self.conn.close()

    @property
    def time_column(self) -> str:
        if self._time_column is None:
            with _driver_errors(), self.conn.cursor() as cur:
                self._time_column = self._archive_time_column(cur)
        return self._time_column

    def _archive_time_column(self, cur) -> str:
        cur.execute(sql.ARCHIVE_COLUMNS)
        columns = {row[0] for row in cur.fetchall()}
        if sql.TIME_COLUMN in columns or not columns:
            return sql.TIME_COLUMN
        return sql.LEGACY_TIME_COLUMN

    def ensure_schema(self) -> SchemaInfo:
        created = False
        with _driver_errors(), self.conn.transaction(), self.conn.cursor() as cur:
            cur.execute(sql.ACQUIRE_BOOTSTRAP_LOCK)
            cur.execute(sql.ARCHIVE_EXISTS)
            if cur.fetchone()[0]:
                time_column = self._archive_time_column(cur)
            else:
                cur.execute(sql.CREATE_EXTENSION)
                cur.execute(sql.EXTENSION_VERSION)
                row = cur.fetchone()
                time_column = sql.time_column_for(row[0] if row else None)
                cur.execute(sql.CREATE_ARCHIVE)
                created = True
                log.info("created archive table %s.%s", sql.ARCHIVE_SCHEMA, sql.ARCHIVE_TABLE)
            cur.execute(sql.INDEX_EXISTS)
            if not cur.fetchone()[0]:
                cur.execute(sql.CREATE_ARCHIVE_INDEX)
            cur.execute(sql.REPORT_FUNCTION_EXISTS)
            if not cur.fetchone()[0]:
                cur.execute(sql.create_report_function(time_column))
                log.info("installed report function %s", sql.REPORT_FUNCTION)
        self._time_column = time_column
        return SchemaInfo(created=created, time_column=time_column)

    @contextmanager
    def snapshot_lock(self) -> Iterator[None]:
        with _driver_errors():
            self.conn.execute(sql.ACQUIRE_SNAPSHOT_LOCK)
        try:
            yield
        finally:
            with _driver_errors():
                self.conn.execute(sql.RELEASE_SNAPSHOT_LOCK)

    def latest_snapshot(self) -> Optional[datetime]:
        with _driver_errors():
            row = self.conn.execute(sql.LATEST_SNAPSHOT).fetchone()
        return row[0] if row else None

    def archive(self, created: datetime) -> int:
        with _driver_errors(), self.conn.transaction():
            cur = self.conn.execute(sql.INSERT_SNAPSHOT, (created,))
            return cur.rowcount

    def reset(self) -> None:
        with _driver_errors():
            self.conn.execute(sql.RESET_COUNTERS)

    def fetch_records(self, since: datetime, till: datetime) -> List[StatementRecord]:
        query = sql.select_records(self.time_column)
        with _driver_errors(), self.conn.cursor() as cur:
            cur.execute(query, (since, till))
            return [
                StatementRecord(
                    created=created,
                    query=text,
                    total_time=float(total_time or 0),
                    rows=int(rows or 0),
                    calls=int(calls or 0),
                    user=user,
                    dbname=dbname,
                )
                for created, text, total_time, rows, calls, user, dbname in cur.fetchall()
            ]

    def server_report(self, since: datetime, till: datetime, limit: int, order: int) -> str:
        with _driver_errors():
            row = self.conn.execute(sql.CALL_REPORT_FUNCTION, (since, till, limit, order)).fetchone()
        return (row[0] if row else None) or ""

