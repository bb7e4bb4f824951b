# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Resolve run configuration from CLI flags, the environment and env files.

Precedence is flag > process environment > env file > default. The
result is a frozen :class:`StatConfig` that every stage receives
explicitly.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional

from stat_statements.errors import ConfigError

DEFAULT_DBNAME = ""
DEFAULT_LIMIT = 10
DEFAULT_ORDER = 0
DEFAULT_WINDOW = timedelta(hours=24)

ORDER_BY_TIME = 0
ORDER_BY_CALLS = 1

ENGINES = ("python", "sql")
FORMATS = ("text", "csv")

TRUE_VALUES = {"1", "true", "t", "yes", "y", "on"}
FALSE_VALUES = {"0", "false", "f", "no", "n", "off", ""}

# PostgreSQL timestamp literals beyond ISO 8601.
INFINITY = datetime.max.replace(tzinfo=timezone.utc)
NEG_INFINITY = datetime.min.replace(tzinfo=timezone.utc)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# "10:00:00+03" or "10:00:00+0330"; fromisoformat wants "+03:00" before 3.11.
SHORT_OFFSET = re.compile(r"(\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?)([+-]\d{2})(\d{2})?$")

# Maps StatConfig field -> environment variable.
ENV_KEYS: Dict[str, str] = {
    "dbname": "STAT_DBNAME",
    "dsn": "STAT_DSN",
    "snapshot": "STAT_SNAPSHOT",
    "since": "STAT_SINCE",
    "till": "STAT_TILL",
    "limit": "STAT_N",
    "order": "STAT_ORDER",
    "engine": "STAT_ENGINE",
    "output_format": "STAT_FORMAT",
}

# libpq variables honoured from an env file; the process environment is
# read by libpq itself.
LIBPQ_KEYS: Dict[str, str] = {
    "PGHOST": "host",
    "PGPORT": "port",
    "PGUSER": "user",
    "PGPASSWORD": "password",  # pragma: allowlist secret
    "PGSSLMODE": "sslmode",
    "PGCONNECT_TIMEOUT": "connect_timeout",
    "PGAPPNAME": "application_name",
}


@dataclass(frozen=True)
class StatConfig:
    dbname: str = DEFAULT_DBNAME
    dsn: str = ""
    snapshot: bool = False
    since: Optional[datetime] = None
    till: Optional[datetime] = None
    limit: int = DEFAULT_LIMIT
    order: int = DEFAULT_ORDER
    engine: str = "python"
    output_format: str = "text"
    conn_params: Dict[str, str] = field(default_factory=dict, compare=False)


def default_env_path() -> Path:
    return Path.cwd() / ".env"

def load_env(path: Path) -> Dict[str, str]:
    env: Dict[str, str] = {}
    if not path.exists():
        return env
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        env[key.strip()] = value
    return env


def parse_bool(value: str, name: str = "value") -> bool:
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def parse_int(value: str, name: str = "value") -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def parse_timestamp(value: str, now: datetime, name: str = "timestamp") -> datetime:
    """Parse ISO 8601 or one of PostgreSQL's special words.

    Naive values are read in the local timezone, as psql would with a
    default ``TimeZone`` setting.
    """
    text = value.strip()
    lowered = text.lower()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if lowered == "now":
        return now
    if lowered == "today":
        return midnight
    if lowered == "yesterday":
        return midnight - timedelta(days=1)
    if lowered == "tomorrow":
        return midnight + timedelta(days=1)
    if lowered == "epoch":
        return EPOCH
    if lowered in ("infinity", "+infinity"):
        return INFINITY
    if lowered == "-infinity":
        return NEG_INFINITY
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = SHORT_OFFSET.sub(lambda m: f"{m.group(1)}{m.group(2)}:{m.group(3) or '00'}", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ConfigError(f"{name} is not a valid timestamp: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def default_since(till: datetime) -> datetime:
    try:
        return till - DEFAULT_WINDOW
    except OverflowError:
        return NEG_INFINITY

def _pick(key: str, overrides: Mapping[str, object], environ: Mapping[str, str], file_env: Mapping[str, str]):
    value = overrides.get(key)
    if value is not None:
        return value
    env_key = ENV_KEYS[key]
    if env_key in environ:
        return environ[env_key]
    if env_key in file_env:
        return file_env[env_key]
    return None


def resolve_config(
    overrides: Optional[Mapping[str, object]] = None,
    environ: Optional[Mapping[str, str]] = None,
    env_file: Optional[Path] = None,
    now: Optional[datetime] = None,
) -> StatConfig:
    """Build a :class:`StatConfig`; ``overrides`` holds already-typed CLI values."""
    overrides = overrides or {}
    environ = os.environ if environ is None else environ
    file_env = load_env(env_file) if env_file is not None else {}
    now = now or datetime.now().astimezone()

    dbname = _pick("dbname", overrides, environ, file_env) or DEFAULT_DBNAME
    dsn = _pick("dsn", overrides, environ, file_env) or ""

    snapshot = _pick("snapshot", overrides, environ, file_env)
    if isinstance(snapshot, str):
        snapshot = parse_bool(snapshot, ENV_KEYS["snapshot"])

    conn_params = {LIBPQ_KEYS[key]: value for key, value in file_env.items() if key in LIBPQ_KEYS}

    if snapshot:
        # Report settings are ignored in snapshot mode, malformed or not.
        return StatConfig(
            dbname=str(dbname),
            dsn=str(dsn),
            snapshot=True,
            since=default_since(now),
            till=now,
            conn_params=conn_params,
        )

    till = _pick("till", overrides, environ, file_env)
    if isinstance(till, str):
        till = parse_timestamp(till, now, ENV_KEYS["till"])
    till = till or now

    since = _pick("since", overrides, environ, file_env)
    if isinstance(since, str):
        since = parse_timestamp(since, now, ENV_KEYS["since"])
    since = since or default_since(till)

    limit = _pick("limit", overrides, environ, file_env)
    limit = DEFAULT_LIMIT if limit is None else parse_int(limit, ENV_KEYS["limit"])

    order = _pick("order", overrides, environ, file_env)
    order = DEFAULT_ORDER if order is None else parse_int(order, ENV_KEYS["order"])

    engine = str(_pick("engine", overrides, environ, file_env) or "python").lower()
    if engine not in ENGINES:
        raise ConfigError(f"engine must be one of {', '.join(ENGINES)}, got {engine!r}")

    output_format = str(_pick("output_format", overrides, environ, file_env) or "text").lower()
    if output_format not in FORMATS:
        raise ConfigError(f"format must be one of {', '.join(FORMATS)}, got {output_format!r}")
    if engine == "sql" and output_format != "text":
        raise ConfigError("the sql engine only produces text output")

    return StatConfig(
        dbname=str(dbname),
        dsn=str(dsn),
        snapshot=False,
        since=since,
        till=till,
        limit=limit,
        order=order,
        engine=engine,
        output_format=output_format,
        conn_params=conn_params,
    )
