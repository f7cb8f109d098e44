"""
Replication sequencing and session state.
"""

from .orchestrator import SyncOrchestrator
from .session import SyncSession

__all__ = ["SyncOrchestrator", "SyncSession"]
