"""
Collection-to-table definitions.

A Definition maps one MongoDB collection onto one relational table. It is
built once from configuration and shared read-only by the tailer and the
mutation executor.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy import Boolean, Column, DateTime, Double, MetaData, String, Table
from sqlalchemy.types import TypeEngine

from ..errors import DefinitionError
from .utils.bson_convert import character_filter, to_boolean, to_date, to_number, to_string
from .utils.field_path import resolve_path

DEFAULT_ID_FIELD = "_id"
DEFAULT_STRING_LENGTH = 255

_TYPE_PATTERN = re.compile(r"^\s*(boolean|number|string|date)\s*(?:\(\s*(\d+)\s*\))?\s*$", re.IGNORECASE)
MAX_IDENTIFIER_LENGTH = 64


class FieldType(str, Enum):
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    DATE = "date"


def column_type(field_type: FieldType, length: Optional[int] = None) -> TypeEngine:
    """Target column type for a declared field type."""
    if field_type is FieldType.BOOLEAN:
        return Boolean(create_constraint=False)
    if field_type is FieldType.NUMBER:
        return Double()
    if field_type is FieldType.STRING:
        return String(length or DEFAULT_STRING_LENGTH)
    return DateTime()


def validate_identifier(name: str, identifier_type: str = "identifier") -> str:
    """
    Check that a table or column name can be used as a quoted identifier.

    Identifiers are always quoted by the SQL dialect, so names such as
    ``user-events`` are fine. MySQL still rejects NUL characters, names
    ending in a space and names longer than 64 characters.

    Raises:
        DefinitionError: If the name is empty, too long or unusable when quoted
    """
    if not isinstance(name, str) or not name:
        raise DefinitionError(f"{identifier_type} cannot be empty")
    if "\x00" in name or name != name.rstrip(" "):
        raise DefinitionError(
            f"Invalid {identifier_type} {name!r}: must not contain NUL or end with a space"
        )
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise DefinitionError(
            f"{identifier_type} {name!r} exceeds the {MAX_IDENTIFIER_LENGTH}-character limit"
        )
    return name


def convert_case(name: str, field_case: str) -> str:
    """
    Apply the configured column name case.

    Example:
        >>> convert_case("createdAt", "snake")
        'created_at'
        >>> convert_case("created_at", "camel")
        'createdAt'
    """
    if field_case == "snake":
        name = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name)
        return name.lower()
    if field_case == "camel":
        stripped = name.lstrip("_")
        leading = name[: len(name) - len(stripped)]
        head, *rest = stripped.split("_")
        return leading + head + "".join(part[:1].upper() + part[1:] for part in rest)
    return name


@dataclass(frozen=True)
class FieldMapping:
    """One source field path bound to one target column."""
    name: str
    column: str
    type: FieldType
    primary: bool = False
    length: Optional[int] = None
    converter: Callable[[Any], Any] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.converter is None:
            object.__setattr__(self, "converter", _make_converter(self.type, self.length, None, None))

    def convert(self, value: Any) -> Any:
        return self.converter(value)

    def value_from(self, document: Any) -> Any:
        """Resolve this field in a document and convert it (absent -> None)."""
        return self.convert(resolve_path(document, self.name))


@dataclass(frozen=True)
class Definition:
    """Mapping of one source collection onto one target table."""
    name: str
    ns: str
    table: str
    fields: Tuple[FieldMapping, ...]

    def __post_init__(self):
        primaries = [f for f in self.fields if f.primary]
        if len(primaries) != 1:
            raise DefinitionError(
                f"Collection {self.name!r} must have exactly one primary field, found {len(primaries)}"
            )
        columns = [f.column for f in self.fields]
        if len(set(columns)) != len(columns):
            raise DefinitionError(f"Collection {self.name!r} maps two fields to the same column")

    @property
    def id_field(self) -> FieldMapping:
        return next(f for f in self.fields if f.primary)

    @property
    def id_name(self) -> str:
        """Source field holding the document id (usually ``_id``)."""
        return self.id_field.name

    @property
    def id_column(self) -> str:
        return self.id_field.column

    def row(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        """Column values for a full document; unmapped fields are dropped."""
        return {f.column: f.value_from(document) for f in self.fields}

    def to_table(self, metadata: MetaData) -> Table:
        """SQLAlchemy table for this definition."""
        columns = [
            Column(f.column, column_type(f.type, f.length), primary_key=f.primary, nullable=not f.primary)
            for f in self.fields
        ]
        return Table(self.table, metadata, *columns)


def _parse_type(declared: str, collection: str, path: str) -> Tuple[FieldType, Optional[int]]:
    match = _TYPE_PATTERN.match(declared or "")
    if not match:
        raise DefinitionError(
            f"Unknown type {declared!r} for {collection}.{path}; "
            f"expected one of {[t.value for t in FieldType]}"
        )
    length = int(match.group(2)) if match.group(2) else None
    return FieldType(match.group(1).lower()), length


def _make_converter(field_type: FieldType, length: Optional[int], exclusions, inclusions) -> Callable[[Any], Any]:
    if field_type is FieldType.BOOLEAN:
        return to_boolean
    if field_type is FieldType.NUMBER:
        return to_number
    if field_type is FieldType.DATE:
        return to_date
    max_length = length or DEFAULT_STRING_LENGTH
    return lambda value: to_string(value, max_length, exclusions, inclusions)


def _field_specs(collection: str, spec: Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]) -> List[Dict[str, Any]]:
    """Normalize both config spellings to a list of {name, type, primary} dicts."""
    if isinstance(spec, Mapping):
        return [
            {"name": path, "type": declared, "primary": path == DEFAULT_ID_FIELD}
            for path, declared in spec.items()
        ]
    if isinstance(spec, (list, tuple)):
        specs = []
        for item in spec:
            if not isinstance(item, Mapping) or "name" not in item:
                raise DefinitionError(f"Field entries of {collection!r} need at least a 'name'")
            specs.append(item)
        if not any(s.get("primary") for s in specs):
            specs = [dict(s, primary=s["name"] == DEFAULT_ID_FIELD) for s in specs]
        return specs
    raise DefinitionError(f"Fields of collection {collection!r} must be a mapping or a list")


def build_definition(
    collection: str,
    spec: Union[Mapping[str, Any], Sequence[Mapping[str, Any]]],
    db_name: str,
    prefix: str = "",
    field_case: str = "",
    inclusions: str = "",
    exclusions: str = "",
) -> Definition:
    """
    Build one Definition from its configuration entry.

    Args:
        collection: Source collection name
        spec: Either ``{"path": "type"}`` (``_id`` is primary) or a list of
              ``{"name", "type", "primary", "column"}`` dicts
        db_name: Source database name, used for the namespace
        prefix: Prepended to the table name
        field_case: "snake", "camel" or "" for column names
        inclusions: Character-class body of characters kept in strings
        exclusions: Character-class body of characters removed from strings

    Raises:
        DefinitionError: On unknown types, bad identifiers or a missing id field
    """
    exclude = character_filter(exclusions)
    include = character_filter(inclusions, negate=True)
    table = validate_identifier(f"{prefix}{collection}", "table")

    fields = []
    for item in _field_specs(collection, spec):
        path = item["name"]
        field_type, length = _parse_type(item.get("type", "string"), collection, path)
        column = item.get("column") or convert_case(path.replace(".", "_"), field_case)
        fields.append(FieldMapping(
            name=path,
            column=validate_identifier(column, "column"),
            type=field_type,
            primary=bool(item.get("primary")),
            length=length,
            converter=_make_converter(field_type, length, exclude, include),
        ))

    return Definition(
        name=collection,
        ns=f"{db_name}.{collection}",
        table=table,
        fields=tuple(fields),
    )


def build_definitions(
    collections: Mapping[str, Any],
    db_name: str,
    prefix: str = "",
    field_case: str = "",
    inclusions: str = "",
    exclusions: str = "",
) -> List[Definition]:
    """Build the definition set for every configured collection, in config order."""
    if not collections:
        raise DefinitionError("No collections configured")
    return [
        build_definition(name, spec, db_name, prefix, field_case, inclusions, exclusions)
        for name, spec in collections.items()
    ]


__all__ = [
    "FieldType",
    "FieldMapping",
    "Definition",
    "build_definition",
    "build_definitions",
    "column_type",
    "convert_case",
    "validate_identifier",
]
