"""
Typed view of ``local.oplog.rs`` entries.

Entry shape::

    {"ts": Timestamp, "op": "i"|"u"|"d"|"n"|"c", "ns": "db.coll",
     "o": <document or update modifier>, "o2": {"_id": ...}}
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from bson import Timestamp


class OpKind(str, Enum):
    INSERT = "i"
    UPDATE = "u"
    DELETE = "d"
    NOOP = "n"
    COMMAND = "c"
    OTHER = "?"

    @classmethod
    def parse(cls, value: Any) -> "OpKind":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


def ts_to_int(ts: Any) -> int:
    """
    Pack a BSON Timestamp into one 64-bit integer: ``(time << 32) | inc``.

    Integers pass through, so already-packed values can be fed back in.
    """
    if isinstance(ts, Timestamp):
        return (ts.time << 32) | ts.inc
    if ts is None:
        return 0
    return int(ts)


def int_to_ts(value: int) -> Timestamp:
    """Inverse of ``ts_to_int``."""
    value = int(value or 0)
    return Timestamp(value >> 32, value & 0xFFFFFFFF)


@dataclass(frozen=True)
class LogEntry:
    """One oplog entry."""
    op: OpKind
    ns: str
    ts: int
    o: Dict[str, Any] = field(default_factory=dict)
    o2: Optional[Dict[str, Any]] = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "LogEntry":
        return cls(
            op=OpKind.parse(raw.get("op")),
            ns=raw.get("ns", ""),
            ts=ts_to_int(raw.get("ts")),
            o=dict(raw.get("o") or {}),
            o2=dict(raw["o2"]) if raw.get("o2") is not None else None,
        )

    def update_delta(self) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
        """
        ``(set_fields, unset_fields)`` for a partial update, or None when the
        update entry carries a full replacement document.

        Handles the classic ``$set``/``$unset`` modifier form and the
        ``{"$v": 2, "diff": {...}}`` form written by MongoDB 5.0+.
        """
        if "$set" in self.o or "$unset" in self.o:
            return dict(self.o.get("$set") or {}), dict(self.o.get("$unset") or {})
        if "diff" in self.o and self.o.get("$v") == 2:
            set_fields: Dict[str, Any] = {}
            unset_fields: Dict[str, Any] = {}
            _flatten_diff(self.o["diff"], "", set_fields, unset_fields)
            return set_fields, unset_fields
        return None


def _flatten_diff(diff: Mapping[str, Any], prefix: str, set_fields: Dict[str, Any], unset_fields: Dict[str, Any]) -> None:
    """
    Translate a v2 update diff into dotted ``$set``/``$unset`` keys.

    ``u`` (updated) and ``i`` (inserted) become sets, ``d`` (deleted) becomes
    unsets, ``s<name>`` recurses into a sub-document. Array diffs
    (``{"a": true, ...}``) hold positional edits without the resulting array,
    so the array path is reported as set to None.
    """
    for key, value in diff.items():
        if key == "u" or key == "i":
            for name, new_value in value.items():
                set_fields[prefix + name] = new_value
        elif key == "d":
            for name in value:
                unset_fields[prefix + name] = True
        elif key.startswith("s") and isinstance(value, Mapping):
            path = prefix + key[1:]
            if value.get("a") is True:
                set_fields[path] = None
            else:
                _flatten_diff(value, path + ".", set_fields, unset_fields)
