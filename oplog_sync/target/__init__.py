"""
Relational target: connection management and mutation execution.
"""

from .connection import ConnectionManager, create_target_engine, normalize_target_url
from .executor import MutationExecutor

__all__ = [
    "ConnectionManager",
    "MutationExecutor",
    "create_target_engine",
    "normalize_target_url",
]
