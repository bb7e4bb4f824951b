# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Make sure the archive table and the report function exist."""

from __future__ import annotations

import logging

from stat_statements.errors import BootstrapError, StoreError

log = logging.getLogger(__name__)


def ensure_environment(store):
    """Create whatever is missing; a no-op when everything is in place.

    Safe to run on every invocation and from concurrent processes: the
    store serializes callers and only creates objects that do not exist
    yet. Any failure rolls the attempt back and raises
    :class:`BootstrapError` with the store's error text.
    """
    try:
        info = store.ensure_schema()
    except StoreError as exc:
        raise BootstrapError(str(exc)) from exc
    if info.created:
        log.info("archive created (time column %s)", info.time_column)
    else:
        log.debug("archive already present (time column %s)", info.time_column)
    return info
