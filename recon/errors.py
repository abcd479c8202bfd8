"""Error taxonomy for reconciliation and backfill operations."""

from __future__ import annotations


class ReconError(Exception):
    """Base class for errors raised by the reconciliation engine."""


class ValidationError(ReconError, ValueError):
    """Malformed input to a pure function (negative owed, foreign event, ...)."""


class CommitFailure(ReconError):
    """The storage collaborator rejected a commit for one ledger entry."""

    def __init__(self, entry_id: str, message: str) -> None:
        super().__init__(f"Commit failed for entry {entry_id}: {message}")
        self.entry_id = entry_id
