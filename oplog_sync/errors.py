from typing import Optional


class SyncError(Exception):
    """Base exception for oplog-sync errors."""


class SyncConnectionError(SyncError):
    """Source or target store is unreachable."""


class StatementError(SyncError):
    """The target rejected a statement (malformed SQL, constraint violation)."""

    def __init__(self, message: str, orig: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.orig = orig


class CheckpointError(SyncError):
    """Error reading the persisted replication checkpoint."""


class OplogGapError(CheckpointError):
    """The checkpoint is older than the oldest entry retained in the oplog."""


class DefinitionError(SyncError, ValueError):
    """Invalid collection-to-table mapping."""
