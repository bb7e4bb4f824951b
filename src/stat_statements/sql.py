# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""SQL used against PostgreSQL.

The archive lives in ``public._stat_statements`` and mirrors
``pg_stat_statements`` with a leading ``created`` column, so archives
written by older tooling stay readable.
"""

from __future__ import annotations

from typing import Optional

from packaging.version import InvalidVersion, Version
from psycopg import sql

ARCHIVE_SCHEMA = "public"
ARCHIVE_TABLE = "_stat_statements"
ARCHIVE_INDEX = "_stat_statements_created"
REPORT_FUNCTION = "_stat_statements_get_report"

# pg_stat_statements 1.8 (PostgreSQL 13) split total_time into
# total_plan_time and total_exec_time.
EXEC_TIME_SINCE = Version("1.8")
TIME_COLUMN = "total_exec_time"
LEGACY_TIME_COLUMN = "total_time"

# Advisory lock keys; arbitrary but fixed.
BOOTSTRAP_LOCK_KEY = 0x5F737473
SNAPSHOT_LOCK_KEY = 0x5F737474


def time_column_for(extversion: Optional[str]) -> str:
    if not extversion:
        return TIME_COLUMN
    try:
        if Version(extversion) < EXEC_TIME_SINCE:
            return LEGACY_TIME_COLUMN
    except InvalidVersion:
        pass
    return TIME_COLUMN


ARCHIVE = sql.Identifier(ARCHIVE_SCHEMA, ARCHIVE_TABLE)

ACQUIRE_BOOTSTRAP_LOCK = sql.SQL("SELECT pg_advisory_xact_lock({})").format(sql.Literal(BOOTSTRAP_LOCK_KEY))
ACQUIRE_SNAPSHOT_LOCK = sql.SQL("SELECT pg_advisory_lock({})").format(sql.Literal(SNAPSHOT_LOCK_KEY))
RELEASE_SNAPSHOT_LOCK = sql.SQL("SELECT pg_advisory_unlock({})").format(sql.Literal(SNAPSHOT_LOCK_KEY))

ARCHIVE_EXISTS = sql.SQL(
    "SELECT EXISTS (SELECT 1 FROM pg_tables WHERE schemaname = {} AND tablename = {})"
).format(sql.Literal(ARCHIVE_SCHEMA), sql.Literal(ARCHIVE_TABLE))

ARCHIVE_COLUMNS = sql.SQL(
    """
    SELECT column_name
      FROM information_schema.columns
     WHERE table_schema = {} AND table_name = {}
    """
).format(sql.Literal(ARCHIVE_SCHEMA), sql.Literal(ARCHIVE_TABLE))

REPORT_FUNCTION_EXISTS = sql.SQL(
    """
    SELECT EXISTS (
        SELECT 1
          FROM pg_proc p
          JOIN pg_namespace n ON n.oid = p.pronamespace
         WHERE n.nspname = {} AND p.proname = {}
    )
    """
).format(sql.Literal(ARCHIVE_SCHEMA), sql.Literal(REPORT_FUNCTION))

CREATE_EXTENSION = sql.SQL("CREATE EXTENSION IF NOT EXISTS pg_stat_statements")

EXTENSION_VERSION = sql.SQL(
    "SELECT extversion FROM pg_extension WHERE extname = 'pg_stat_statements'"
)

CREATE_ARCHIVE = sql.SQL(
    """
    CREATE TABLE IF NOT EXISTS {} AS
    SELECT NULL::timestamp with time zone AS created, *
      FROM pg_stat_statements
     LIMIT 0
    """
).format(ARCHIVE)

INDEX_EXISTS = sql.SQL(
    "SELECT EXISTS (SELECT 1 FROM pg_indexes WHERE schemaname = {} AND indexname = {})"
).format(sql.Literal(ARCHIVE_SCHEMA), sql.Literal(ARCHIVE_INDEX))

CREATE_ARCHIVE_INDEX = sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} (created)").format(
    sql.Identifier(ARCHIVE_INDEX), ARCHIVE
)

LATEST_SNAPSHOT = sql.SQL("SELECT max(created) FROM {}").format(ARCHIVE)

INSERT_SNAPSHOT = sql.SQL(
    "INSERT INTO {} SELECT %s::timestamp with time zone, * FROM pg_stat_statements"
).format(ARCHIVE)

RESET_COUNTERS = sql.SQL("SELECT pg_stat_statements_reset()")

CALL_REPORT_FUNCTION = sql.SQL("SELECT {}(%s, %s, %s, %s)").format(
    sql.Identifier(ARCHIVE_SCHEMA, REPORT_FUNCTION)
)


def select_records(time_column: str) -> sql.Composed:
    return sql.SQL(
        """
        SELECT s.created, s.query, s.{time}, s.rows, s.calls, u.usename, d.datname
          FROM {archive} s
          LEFT JOIN pg_user u ON s.userid = u.usesysid
          LEFT JOIN pg_database d ON s.dbid = d.oid
         WHERE s.created > %s AND s.created <= %s
         ORDER BY s.created
        """
    ).format(time=sql.Identifier(time_column), archive=ARCHIVE)


def create_report_function(time_column: str) -> sql.Composed:
    """Server-side twin of :func:`stat_statements.report.build_report`.

    The body is dollar-quoted and sent without parameters, so the
    ``%%`` escapes reach ``format()`` unchanged.
    """
    body = sql.SQL(
        r"""
        BEGIN
            WITH grouped AS (
                SELECT
                    sum(s.{time}) AS time,
                    sum(s.rows) AS rows,
                    sum(s.calls) AS calls,
                    string_agg(u.usename, ' ') AS users,
                    string_agg(d.datname, ' ') AS dbs,
                    s.query AS raw_query
                FROM {archive} s
                LEFT JOIN pg_user u ON s.userid = u.usesysid
                LEFT JOIN pg_database d ON s.dbid = d.oid
                WHERE s.created > i_since AND s.created <= i_till
                GROUP BY s.query
            ), ranked AS (
                SELECT
                    time, rows, calls, users, dbs,
                    100 * time / NULLIF(sum(time) OVER (), 0) AS time_percent,
                    100 * calls / NULLIF(sum(calls) OVER (), 0) AS calls_percent,
                    sum(calls) OVER () AS total_calls,
                    raw_query,
                    row_number() OVER (
                        ORDER BY
                            CASE WHEN i_order = 1 THEN calls ELSE time END DESC,
                            raw_query
                    ) AS pos
                FROM grouped
            ), bucketed AS (
                SELECT
                    time, rows, calls, users, dbs, time_percent, calls_percent,
                    CASE WHEN pos > i_n THEN 'other' ELSE raw_query END AS query,
                    CASE WHEN pos > i_n THEN i_n + 1 ELSE pos END AS pos
                FROM ranked
                WHERE total_calls > 0
            ), merged AS (
                SELECT
                    pos,
                    sum(time)::numeric(18,3) AS time,
                    coalesce(sum(time_percent), 0)::numeric(5,2) AS time_percent,
                    coalesce(sum(time) / NULLIF(sum(calls), 0), 0)::numeric(18,3) AS time_avg,
                    sum(calls) AS calls,
                    coalesce(sum(calls_percent), 0)::numeric(5,2) AS calls_percent,
                    sum(rows) AS rows,
                    coalesce(sum(rows)::numeric / NULLIF(sum(calls), 0), 0)::numeric(18,3) AS rows_avg,
                    array_to_string(array(
                        SELECT DISTINCT unnest(string_to_array(string_agg(users, ' '), ' ')) ORDER BY 1
                    ), ', ') AS users,
                    array_to_string(array(
                        SELECT DISTINCT unnest(string_to_array(string_agg(dbs, ' '), ' ')) ORDER BY 1
                    ), ', ') AS dbs,
                    query
                FROM bucketed
                GROUP BY query, pos
            )
            SELECT INTO o_report string_agg(
                format(
                    E'pos: %s\n' ||
                    E'time: %s%%, %s ms, %s ms avg\n' ||
                    E'calls: %s%%, %s\n' ||
                    E'rows: %s, %s avg\n' ||
                    E'users: %s\ndbs: %s\n\n%s',
                    pos, time_percent, time, time_avg, calls_percent,
                    calls, rows, rows_avg, users, dbs, query),
                E'\n\n' ORDER BY pos)
            FROM merged;
            RETURN;
        END
        """
    ).format(time=sql.Identifier(time_column), archive=ARCHIVE)

    return sql.SQL(
        """
        CREATE OR REPLACE FUNCTION {function}(
            i_since timestamp with time zone, i_till timestamp with time zone,
            i_n integer, i_order integer, -- 0 - by time, 1 - by calls
            OUT o_report text)
        RETURNS text LANGUAGE plpgsql AS $function${body}$function$
        """
    ).format(
        function=sql.Identifier(ARCHIVE_SCHEMA, REPORT_FUNCTION),
        body=body,
    )
