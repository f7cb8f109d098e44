"""
CDC (Change Data Capture) module for MongoDB oplog tailing.
"""

from .checkpoint_store import CheckpointStore
from .oplog_tailer import OplogTailer, TailerState

__all__ = [
    "OplogTailer",
    "TailerState",
    "CheckpointStore",
]
