# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Error taxonomy shared by every stage of a run."""

from __future__ import annotations


class StatStatementsError(Exception):
    """Base error; ``stage`` names the step that failed."""

    stage = "run"

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ConfigError(StatStatementsError):
    stage = "config"


class StoreConnectionError(StatStatementsError):
    stage = "connect"


class BootstrapError(StatStatementsError):
    stage = "bootstrap"


class SnapshotError(StatStatementsError):
    """Raised when archiving or resetting fails.

    ``archived`` is true when the rows reached the archive and only the
    counter reset failed; the snapshot is usable in that case.
    """

    stage = "snapshot"

    def __init__(self, message: str, archived: bool = False) -> None:
        super().__init__(message)
        self.archived = archived


class ReportError(StatStatementsError):
    stage = "report"


class StoreError(StatStatementsError):
    """A driver error, carrying the server's text verbatim."""

    stage = "store"
