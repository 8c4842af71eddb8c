"""Typed errors raised by the reconciliation engine.

Every error carries a machine-readable ``code`` so the presentation layer can
branch on type rather than message text:

    ReconciliationError
    +-- FetchError            ledger or record store unreachable / unreadable
    +-- ValidationFailure     rejected before any store call; names the field
    |   +-- ManualEntryError  manual-add form problems
    +-- SaveError             the store rejected an upsert or delete
    +-- SaveInProgressError   a second save was requested while one is pending

None of these are fatal; retrying the user action is always safe.
"""

from __future__ import annotations

from typing import Literal


class ReconciliationError(Exception):
    code: str = "reconciliation_error"


class FetchError(ReconciliationError):
    code = "fetch_failed"

    def __init__(self, source: Literal["ledger", "store", "labs"], message: str) -> None:
        super().__init__(f"{source} fetch failed: {message}")
        self.source = source


class ValidationFailure(ReconciliationError, ValueError):
    code = "validation_failed"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.reason = message


class ManualEntryError(ValidationFailure):
    pass


class SaveError(ReconciliationError):
    code = "save_failed"

    def __init__(self, record_id: str, message: str) -> None:
        super().__init__(f"save of record {record_id} failed: {message}")
        self.record_id = record_id


class SaveInProgressError(ReconciliationError):
    code = "save_in_progress"

    def __init__(self) -> None:
        super().__init__("a save is already in progress; wait for it to finish")


__all__ = [
    "FetchError",
    "ManualEntryError",
    "ReconciliationError",
    "SaveError",
    "SaveInProgressError",
    "ValidationFailure",
]
