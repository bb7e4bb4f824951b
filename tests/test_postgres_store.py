# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""PostgresStore against a recording connection, no server needed."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import psycopg
import pytest

from stat_statements import sql
from stat_statements.bootstrap import ensure_environment
from stat_statements.config import StatConfig
from stat_statements.errors import BootstrapError, SnapshotError
from stat_statements.report import generate_report
from stat_statements.snapshot import take_snapshot
from stat_statements.store import PostgresStore

T0 = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)

TAGS = [
    (sql.ACQUIRE_BOOTSTRAP_LOCK, "bootstrap lock"),
    (sql.ACQUIRE_SNAPSHOT_LOCK, "lock"),
    (sql.RELEASE_SNAPSHOT_LOCK, "unlock"),
    (sql.ARCHIVE_EXISTS, "table?"),
    (sql.ARCHIVE_COLUMNS, "columns?"),
    (sql.CREATE_EXTENSION, "create extension"),
    (sql.EXTENSION_VERSION, "extversion?"),
    (sql.CREATE_ARCHIVE, "create table"),
    (sql.INDEX_EXISTS, "index?"),
    (sql.CREATE_ARCHIVE_INDEX, "create index"),
    (sql.REPORT_FUNCTION_EXISTS, "function?"),
    (sql.LATEST_SNAPSHOT, "latest"),
    (sql.INSERT_SNAPSHOT, "insert"),
    (sql.RESET_COUNTERS, "reset"),
    (sql.CALL_REPORT_FUNCTION, "report"),
]


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.result = []
        self.rowcount = -1

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        pass

    def execute(self, query, params=None):
        self.conn.run(self, query, params)
        return self

    def fetchone(self):
        return self.result[0] if self.result else None

    def fetchall(self):
        return list(self.result)


class FakeConnection:
    """Answers the store's catalog checks from a few flags."""

    def __init__(self, table=False, index=False, function=False, extversion="1.10",
                 columns=None, live_rows=0, latest=None, records=(), report=None, fail_on=None):
        self.table = table
        self.index = index
        self.function = function
        self.extversion = extversion
        self.columns = list(columns or ([] if not table else ["created", "query", "total_exec_time"]))
        self.live_rows = live_rows
        self.latest = latest
        self.records = list(records)
        self.report = report
        self.fail_on = fail_on
        self.log = []
        self.statements = []
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def execute(self, query, params=None):
        return self.cursor().execute(query, params)

    @contextmanager
    def transaction(self):
        self.log.append("begin")
        try:
            yield
        except Exception:
            self.log.append("rollback")
            raise
        self.log.append("commit")

    def close(self):
        self.closed = True

    def tag(self, query, text):
        for statement, name in TAGS:
            if query is statement:
                return name
        if "CREATE OR REPLACE FUNCTION" in text:
            return "create function"
        if "ORDER BY s.created" in text:
            return "select"
        raise AssertionError(f"unexpected statement: {text}")

    def run(self, cur, query, params):
        text = query.as_string(None)
        name = self.tag(query, text)
        self.log.append(name)
        self.statements.append((name, text, params))
        if name == self.fail_on:
            raise psycopg.errors.InsufficientPrivilege(f"permission denied ({name})")

        if name == "table?":
            cur.result = [(self.table,)]
        elif name == "columns?":
            cur.result = [(column,) for column in self.columns]
        elif name == "extversion?":
            cur.result = [(self.extversion,)]
        elif name == "create table":
            self.table = True
            self.columns = ["created", "query", sql.time_column_for(self.extversion)]
        elif name == "index?":
            cur.result = [(self.index,)]
        elif name == "create index":
            self.index = True
        elif name == "function?":
            cur.result = [(self.function,)]
        elif name == "create function":
            self.function = True
        elif name == "latest":
            cur.result = [(self.latest,)]
        elif name == "insert":
            cur.rowcount = self.live_rows
        elif name == "select":
            cur.result = self.records
        elif name == "report":
            cur.result = [(self.report,)]
        else:
            cur.result = [(None,)]


def creates(conn):
    return [name for name in conn.log if name.startswith("create")]


def last(conn, name):
    """Text and parameters of the most recent ``name`` statement."""
    for tag, text, params in reversed(conn.statements):
        if tag == name:
            return text, params
    raise AssertionError(f"{name} never ran")


def test_fresh_database_gets_every_object():
    conn = FakeConnection()
    info = ensure_environment(PostgresStore(conn))

    assert info.created is True
    assert info.time_column == "total_exec_time"
    assert creates(conn) == ["create extension", "create table", "create index", "create function"]
    assert conn.log[:2] == ["begin", "bootstrap lock"]
    assert conn.log[-1] == "commit"


def test_second_bootstrap_creates_nothing():
    conn = FakeConnection()
    store = PostgresStore(conn)
    ensure_environment(store)
    conn.log.clear()

    info = ensure_environment(store)
    assert info.created is False
    assert creates(conn) == []
    assert conn.log == ["begin", "bootstrap lock", "table?", "columns?", "index?", "function?", "commit"]


@pytest.mark.parametrize(
    "index, function, expected",
    [
        (False, True, ["create index"]),
        (True, False, ["create function"]),
        (False, False, ["create index", "create function"]),
    ],
)
def test_missing_objects_are_restored(index, function, expected):
    conn = FakeConnection(table=True, index=index, function=function)
    info = ensure_environment(PostgresStore(conn))

    assert info.created is False
    assert creates(conn) == expected


def test_old_extension_uses_total_time():
    conn = FakeConnection(extversion="1.7")
    info = ensure_environment(PostgresStore(conn))

    assert info.time_column == "total_time"
    function_text, _ = last(conn, "create function")
    assert 'sum(s."total_time")' in function_text


def test_legacy_archive_keeps_total_time():
    conn = FakeConnection(table=True, index=True, columns=["created", "query", "total_time", "rows"])
    info = ensure_environment(PostgresStore(conn))

    assert info.time_column == "total_time"
    assert 'sum(s."total_time")' in last(conn, "create function")[0]


def test_time_column_looked_up_without_bootstrap():
    conn = FakeConnection(table=True, columns=["created", "query", "total_time"])
    PostgresStore(conn).fetch_records(T0 - timedelta(hours=1), T0)
    assert conn.log == ["columns?", "select"]
    assert 's."total_time"' in last(conn, "select")[0]


def test_bootstrap_error_rolls_back():
    conn = FakeConnection(fail_on="create extension")
    with pytest.raises(BootstrapError) as excinfo:
        ensure_environment(PostgresStore(conn))

    assert str(excinfo.value) == "permission denied (create extension)"
    assert conn.log[-1] == "rollback"
    assert "create table" not in conn.log


def test_snapshot_statement_order():
    conn = FakeConnection(table=True, index=True, function=True, live_rows=42, latest=T0 - timedelta(hours=1))
    result = take_snapshot(PostgresStore(conn), now=T0)

    assert result.rows == 42
    assert result.created == T0
    assert conn.log == ["lock", "latest", "begin", "insert", "commit", "reset", "unlock"]
    assert last(conn, "insert")[1] == (T0,)


def test_failed_reset_still_unlocks():
    conn = FakeConnection(live_rows=3, fail_on="reset")
    with pytest.raises(SnapshotError) as excinfo:
        take_snapshot(PostgresStore(conn), now=T0)

    assert excinfo.value.archived is True
    assert conn.log[-1] == "unlock"
    assert "commit" in conn.log


def test_fetch_records_maps_rows():
    rows = [
        (T0, "SELECT 1", Decimal("1.5"), 1, 3, "app", "main"),
        (T0, "SELECT 2", None, None, None, None, None),
    ]
    conn = FakeConnection(table=True, records=rows)
    since = T0 - timedelta(hours=1)
    first, second = PostgresStore(conn).fetch_records(since, T0)

    assert last(conn, "select")[1] == (since, T0)
    assert (first.total_time, first.rows, first.calls, first.user) == (1.5, 1, 3, "app")
    assert (second.total_time, second.rows, second.calls, second.user) == (0.0, 0, 0, None)


def test_sql_engine_calls_report_function():
    conn = FakeConnection(report="pos: 1\nSELECT 1")
    config = StatConfig(since=T0 - timedelta(hours=1), till=T0, limit=3, order=1, engine="sql")

    assert generate_report(PostgresStore(conn), config) == "pos: 1\nSELECT 1"
    assert last(conn, "report")[1] == (config.since, T0, 3, 1)


def test_sql_engine_empty_window():
    conn = FakeConnection(report=None)
    config = StatConfig(since=T0 - timedelta(hours=1), till=T0, engine="sql")
    assert generate_report(PostgresStore(conn), config) == ""


def test_report_function_text():
    text = sql.create_report_function("total_exec_time").as_string(None)

    assert 'CREATE OR REPLACE FUNCTION "public"."_stat_statements_get_report"(' in text
    assert "AS $function$" in text
    assert text.rstrip().endswith("$function$")
    assert text.count("$function$") == 2
    assert 'FROM "public"."_stat_statements" s' in text
    assert "WHERE s.created > i_since AND s.created <= i_till" in text
    assert "E'time: %s%%, %s ms, %s ms avg\\n'" in text
    assert "E'calls: %s%%, %s\\n'" in text
    assert "E'\\n\\n' ORDER BY pos" in text
