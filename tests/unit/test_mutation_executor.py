"""Tests for MutationExecutor against an in-memory SQLite target."""

from unittest.mock import Mock

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from oplog_sync.core.definitions import build_definition
from oplog_sync.errors import StatementError
from oplog_sync.target.executor import MutationExecutor, is_duplicate_key


def rows(connections, executor, definition):
    table = executor.table_for(definition)
    handle = connections.acquire()
    result = handle.execute(select(table).order_by(table.c["_id"])).mappings().all()
    handle.commit()
    return [dict(r) for r in result]


class TestInsert:
    """Test insert and replace."""

    def test_insert(self, executor, connections, users_definition):
        """Scenario: insert entry for users."""
        executor.insert(users_definition, {"_id": "u1", "name": "Ann", "age": 30})
        assert rows(connections, executor, users_definition) == [
            {"_id": "u1", "name": "Ann", "age": 30.0}
        ]

    def test_absent_fields_are_null(self, executor, connections, users_definition):
        executor.insert(users_definition, {"_id": "u1"})
        assert rows(connections, executor, users_definition) == [
            {"_id": "u1", "name": None, "age": None}
        ]

    def test_values_are_bound_not_interpolated(self, executor, connections, users_definition, statements):
        hostile = "Ann'); DROP TABLE users; --"
        executor.insert(users_definition, {"_id": "u1", "name": hostile})
        assert rows(connections, executor, users_definition)[0]["name"] == hostile
        assert all(hostile not in s for s in statements)

    def test_replace_overwrites_every_column(self, executor, connections, users_definition):
        executor.insert(users_definition, {"_id": "u1", "name": "Ann", "age": 30})
        executor.insert(users_definition, {"_id": "u1", "name": "Annie"}, replace=True)
        assert rows(connections, executor, users_definition) == [
            {"_id": "u1", "name": "Annie", "age": None}
        ]

    def test_replace_inserts_missing_row(self, executor, connections, users_definition):
        executor.insert(users_definition, {"_id": "u2", "name": "Bob"}, replace=True)
        assert rows(connections, executor, users_definition)[0]["_id"] == "u2"

    def test_replayed_insert_becomes_replace(self, executor, connections, users_definition):
        executor.insert(users_definition, {"_id": "u1", "name": "Ann", "age": 30})
        executor.insert(users_definition, {"_id": "u1", "name": "Ann", "age": 31})
        assert rows(connections, executor, users_definition) == [
            {"_id": "u1", "name": "Ann", "age": 31.0}
        ]

    def test_replayed_insert_fails_when_disabled(self, connections, users_definition, checkpoints):
        executor = MutationExecutor(connections, [users_definition], checkpoints, replay_inserts_as_replace=False)
        executor.create_tables()
        executor.insert(users_definition, {"_id": "u1", "name": "Ann"})
        with pytest.raises(StatementError) as exc_info:
            executor.insert(users_definition, {"_id": "u1", "name": "Ann"})
        assert is_duplicate_key(exc_info.value.orig)


class TestUpdate:
    """Test partial updates."""

    def test_set(self, executor, connections, users_definition):
        """Scenario: $set age for u1."""
        executor.insert(users_definition, {"_id": "u1", "name": "Ann", "age": 30})
        assert executor.update(users_definition, "u1", {"age": 31}, {}) is True
        assert rows(connections, executor, users_definition) == [
            {"_id": "u1", "name": "Ann", "age": 31.0}
        ]

    def test_unset_binds_null(self, executor, connections, users_definition):
        executor.insert(users_definition, {"_id": "u1", "name": "Ann", "age": 30})
        executor.update(users_definition, "u1", {}, {"name": ""})
        assert rows(connections, executor, users_definition)[0]["name"] is None

    def test_untouched_update_issues_no_statement(self, executor, users_definition, statements):
        statements.clear()
        assert executor.update(users_definition, "u1", {"unmapped": 1}, {"other": ""}) is False
        assert executor.update(users_definition, "u1", None, None) is False
        assert statements == []

    def test_nested_paths(self, connections, checkpoints):
        definition = build_definition("people", {"_id": "string", "address.city": "string"}, "shop")
        executor = MutationExecutor(connections, [definition], checkpoints)
        executor.create_tables()
        executor.insert(definition, {"_id": "p1", "address": {"city": "Oslo"}})
        executor.update(definition, "p1", {"address.city": "Bergen"}, {})
        assert rows(connections, executor, definition)[0]["address_city"] == "Bergen"
        executor.update(definition, "p1", {}, {"address": ""})
        assert rows(connections, executor, definition)[0]["address_city"] is None

    def test_replayed_update_is_idempotent(self, executor, connections, users_definition):
        executor.insert(users_definition, {"_id": "u1", "name": "Ann", "age": 30})
        executor.update(users_definition, "u1", {"age": 31}, {})
        once = rows(connections, executor, users_definition)
        executor.update(users_definition, "u1", {"age": 31}, {})
        assert rows(connections, executor, users_definition) == once


class TestRemove:
    """Test deletes."""

    def test_remove(self, executor, connections, users_definition):
        """Scenario: delete u1."""
        executor.insert(users_definition, {"_id": "u1", "name": "Ann"})
        executor.insert(users_definition, {"_id": "u2", "name": "Bob"})
        executor.remove(users_definition, "u1")
        assert [r["_id"] for r in rows(connections, executor, users_definition)] == ["u2"]

    def test_replayed_remove_is_idempotent(self, executor, connections, users_definition):
        executor.insert(users_definition, {"_id": "u1"})
        executor.remove(users_definition, "u1")
        executor.remove(users_definition, "u1")
        assert rows(connections, executor, users_definition) == []


class TestOrdering:
    """Entries for one key must be applied in order."""

    def test_insert_update_delete_sequence(self, executor, connections, users_definition):
        executor.insert(users_definition, {"_id": "u1", "name": "Ann", "age": 30})
        executor.update(users_definition, "u1", {"age": 31}, {})
        executor.remove(users_definition, "u1")
        executor.insert(users_definition, {"_id": "u1", "name": "Ann", "age": 40})
        assert rows(connections, executor, users_definition) == [
            {"_id": "u1", "name": "Ann", "age": 40.0}
        ]


class TestCreateTables:
    """Test create_tables."""

    def test_recreates_tables_and_seeds_checkpoint(self, executor, connections, users_definition, checkpoints):
        executor.insert(users_definition, {"_id": "u1"})
        checkpoints.update_timestamp(99)
        executor.create_tables()
        assert rows(connections, executor, users_definition) == []
        assert checkpoints.read_timestamp() == 0

    def test_statement_error(self, executor, connections):
        with pytest.raises(StatementError):
            connections.execute(text("INSERT INTO missing_table VALUES (1)"))


class TestIsDuplicateKey:
    """Test duplicate key detection."""

    def test_mysql_code(self):
        orig = Exception(1062, "Duplicate entry 'u1' for key 'PRIMARY'")
        assert is_duplicate_key(IntegrityError("INSERT", {}, orig))

    def test_other_integrity_error(self):
        orig = Exception(1048, "Column '_id' cannot be null")
        assert not is_duplicate_key(IntegrityError("INSERT", {}, orig))

    def test_not_integrity_error(self):
        assert not is_duplicate_key(ValueError("duplicate key"))
        assert not is_duplicate_key(Mock())


class TestQuotedIdentifiers:
    """Collection and field names that are not plain SQL identifiers."""

    def test_round_trip(self, connections, checkpoints, statements):
        definition = build_definition("user-events", {"_id": "string", "first-name": "string"}, "shop")
        executor = MutationExecutor(connections, [definition], checkpoints)
        executor.create_tables()

        executor.insert(definition, {"_id": "e1", "first-name": "Ann"})
        executor.update(definition, "e1", {"first-name": "Annie"}, {})

        table = executor.table_for(definition)
        handle = connections.acquire()
        result = [dict(r) for r in handle.execute(select(table)).mappings()]
        handle.commit()
        assert result == [{"_id": "e1", "first-name": "Annie"}]
        assert any('"user-events"' in s for s in statements)
