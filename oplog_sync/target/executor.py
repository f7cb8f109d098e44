"""
Mutation executor: turns documents and update deltas into SQL statements.

Statements are SQLAlchemy Core constructs, so identifiers are quoted by the
dialect and every document value is a bound parameter.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from prometheus_client import Counter
from sqlalchemy import MetaData, Table, delete, insert, update
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.schema import CreateTable, DropTable

from ..connectors.cdc.checkpoint_store import CheckpointStore
from ..core.definitions import Definition
from ..core.utils.field_path import covers_path, resolve_path
from ..errors import StatementError, SyncError
from .connection import ConnectionManager

logger = logging.getLogger(__name__)

statements_total = Counter(
    'oplog_sync_statements_total',
    'Statements executed against the target',
    ['table', 'kind', 'status']
)

_UPSERT_DIALECTS = {
    "mysql": mysql,
    "mariadb": mysql,
    "postgresql": postgresql,
    "sqlite": sqlite,
}


def is_duplicate_key(error: BaseException) -> bool:
    """
    True for a primary/unique key violation.

    MySQL reports error 1062 (ER_DUP_ENTRY); PostgreSQL and SQLite are
    recognized by message.
    """
    if not isinstance(error, IntegrityError):
        return False
    orig = getattr(error, "orig", None)
    error_code = getattr(orig, "args", [None])[0] if orig is not None else None
    message = str(orig if orig is not None else error)
    return (
        error_code == 1062
        or "Duplicate entry" in message
        or "duplicate key" in message.lower()
        or "UNIQUE constraint failed" in message
    )


class MutationExecutor:
    """
    Applies inserts, replaces, updates and deletes for mapped collections.

    Replay handling: oplog delivery is at-least-once, so a replayed insert
    may hit an existing primary key. With ``replay_inserts_as_replace`` the
    insert is re-issued as a replace; replace, update and delete are safe to
    replay as they are.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        definitions: Sequence[Definition],
        checkpoints: CheckpointStore,
        replay_inserts_as_replace: bool = True,
    ):
        self.connections = connections
        self.definitions = list(definitions)
        self.checkpoints = checkpoints
        self.replay_inserts_as_replace = replay_inserts_as_replace
        self.metadata = MetaData()
        self._tables: Dict[str, Table] = {
            d.ns: d.to_table(self.metadata) for d in self.definitions
        }

    def table_for(self, definition: Definition) -> Table:
        return self._tables[definition.ns]

    def insert(self, definition: Definition, document: Mapping[str, Any], replace: bool = False) -> None:
        """
        Insert (or replace) one row built from a full document.

        Every mapped field is bound through its converter; absent fields are
        written as NULL.
        """
        table = self.table_for(definition)
        values = definition.row(document)
        if replace:
            self._execute(definition, "replace", self._upsert(table, definition, values))
            return

        try:
            self._execute(definition, "insert", insert(table).values(values))
        except StatementError as e:
            if not (self.replay_inserts_as_replace and is_duplicate_key(e.orig)):
                raise
            logger.info(
                f"Duplicate key on insert into {definition.table}, replacing "
                f"({definition.id_column}={values.get(definition.id_column)!r})",
                extra={"table": definition.table}
            )
            self._execute(definition, "replace", self._upsert(table, definition, values))

    def update(
        self,
        definition: Definition,
        id_value: Any,
        set_fields: Optional[Mapping[str, Any]],
        unset_fields: Optional[Mapping[str, Any]],
    ) -> bool:
        """
        Apply a ``$set`` / ``$unset`` delta to one row.

        Touched columns are the mapped fields whose path (or an ancestor of
        it) appears in either delta. Unset columns become NULL.

        Returns:
            False if no mapped column was touched (no statement issued)
        """
        set_fields = set_fields or {}
        unset_fields = unset_fields or {}
        values = {}
        for field in definition.fields:
            if covers_path(set_fields, field.name):
                values[field.column] = field.convert(resolve_path(set_fields, field.name))
            elif covers_path(unset_fields, field.name):
                values[field.column] = None
        if not values:
            return False

        table = self.table_for(definition)
        statement = (
            update(table)
            .where(table.c[definition.id_column] == definition.id_field.convert(id_value))
            .values(values)
        )
        self._execute(definition, "update", statement)
        return True

    def remove(self, definition: Definition, id_value: Any) -> None:
        """Delete one row by primary key."""
        table = self.table_for(definition)
        statement = delete(table).where(
            table.c[definition.id_column] == definition.id_field.convert(id_value)
        )
        self._execute(definition, "delete", statement)

    def create_tables(self) -> None:
        """
        (Re)create the checkpoint table and one table per definition, then
        seed the checkpoint at zero. Existing data is dropped.
        """
        self.checkpoints.recreate()
        for definition in self.definitions:
            table = self.table_for(definition)
            self.connections.execute(DropTable(table, if_exists=True))
            self.connections.execute(CreateTable(table))
            logger.info(
                f"Created table {definition.table} for {definition.ns}",
                extra={"table": definition.table, "namespace": definition.ns}
            )

    def _upsert(self, table: Table, definition: Definition, values: Dict[str, Any]):
        dialect = _UPSERT_DIALECTS.get(self.connections.dialect_name)
        if dialect is None:
            raise SyncError(f"Replace is not supported on {self.connections.dialect_name!r}")

        statement = dialect.insert(table).values(values)
        changes = {c: v for c, v in values.items() if c != definition.id_column}
        if dialect is mysql:
            if not changes:
                return statement.prefix_with("IGNORE")
            return statement.on_duplicate_key_update(changes)
        if not changes:
            return statement.on_conflict_do_nothing(index_elements=[definition.id_column])
        return statement.on_conflict_do_update(index_elements=[definition.id_column], set_=changes)

    def _execute(self, definition: Definition, kind: str, statement) -> None:
        try:
            self.connections.execute(statement)
        except SyncError:
            statements_total.labels(table=definition.table, kind=kind, status='error').inc()
            raise
        statements_total.labels(table=definition.table, kind=kind, status='success').inc()
        logger.debug(
            f"{kind} on {definition.table}",
            extra={"table": definition.table, "kind": kind}
        )
