"""
MongoDB source access and oplog entry model.
"""

from .connection import (
    latest_oplog_timestamp,
    oldest_oplog_timestamp,
    open_oplog_cursor,
    source_database,
)
from .oplog import LogEntry, OpKind, int_to_ts, ts_to_int

__all__ = [
    "LogEntry",
    "OpKind",
    "ts_to_int",
    "int_to_ts",
    "source_database",
    "latest_oplog_timestamp",
    "oldest_oplog_timestamp",
    "open_oplog_cursor",
]
