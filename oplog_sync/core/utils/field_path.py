"""
Dot-path resolution over nested MongoDB documents.

Oplog payloads mix two spellings of the same location: nested sub-documents
(``{"address": {"city": "Oslo"}}``) and flattened dotted keys
(``{"$set": {"address.city": "Oslo"}}``). ``resolve_path`` accepts both.
"""

from typing import Any, Mapping


class _Missing:
    """Sentinel for a path that is absent (as opposed to present with None)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def resolve_path(document: Any, path: str) -> Any:
    """
    Walk ``path`` through ``document``.

    At each level the longest dotted key present wins, so ``"a.b.c"`` matches
    ``{"a.b": {"c": 1}}`` as well as ``{"a": {"b": {"c": 1}}}``.

    Args:
        document: Nested mapping (lists are treated as leaves)
        path: Dot-separated field path

    Returns:
        The value found, or ``MISSING`` if any segment is absent

    Example:
        >>> resolve_path({"a": {"b": 1}}, "a.b")
        1
        >>> resolve_path({"a.b": 2}, "a.b")
        2
        >>> resolve_path({"a": 1}, "a.b")
        MISSING
    """
    if not path:
        return MISSING
    return _resolve(document, path.split("."))


def _resolve(node: Any, parts: list) -> Any:
    if not isinstance(node, Mapping):
        return MISSING
    for size in range(len(parts), 0, -1):
        key = ".".join(parts[:size])
        if key not in node:
            continue
        rest = parts[size:]
        if not rest:
            return node[key]
        found = _resolve(node[key], rest)
        if found is not MISSING:
            return found
    return MISSING


def covers_path(delta: Any, path: str) -> bool:
    """
    True if ``delta`` touches ``path`` itself or one of its ancestors.

    ``{"$unset": {"address": ""}}`` removes ``address.city`` too, and
    ``{"$set": {"address": {...}}}`` rewrites it.
    """
    if not isinstance(delta, Mapping) or not delta:
        return False
    parts = path.split(".")
    for size in range(1, len(parts) + 1):
        if resolve_path(delta, ".".join(parts[:size])) is not MISSING:
            return True
    return False
