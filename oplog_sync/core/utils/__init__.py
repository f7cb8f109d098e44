"""
Utility functions for document handling.
"""

from .bson_convert import character_filter, to_boolean, to_date, to_number, to_string
from .field_path import MISSING, covers_path, resolve_path

__all__ = [
    "MISSING",
    "resolve_path",
    "covers_path",
    "to_boolean",
    "to_number",
    "to_string",
    "to_date",
    "character_filter",
]
