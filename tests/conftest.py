"""Shared fixtures: SQLite-backed target and the ``users`` definition."""

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

from oplog_sync.connectors.cdc.checkpoint_store import CheckpointStore
from oplog_sync.core.definitions import build_definition
from oplog_sync.target.connection import ConnectionManager
from oplog_sync.target.executor import MutationExecutor

USERS_FIELDS = [
    {"name": "_id", "type": "string", "primary": True},
    {"name": "name", "type": "string"},
    {"name": "age", "type": "number"},
]


@pytest.fixture
def sqlite_engine():
    """In-memory SQLite shared by every connection of the test."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def statements(sqlite_engine):
    """List of SQL strings sent to the target, in order."""
    executed = []

    @event.listens_for(sqlite_engine, "before_cursor_execute")
    def record(conn, cursor, statement, parameters, context, executemany):
        executed.append(statement)

    return executed


@pytest.fixture
def connections(sqlite_engine):
    return ConnectionManager(engine=sqlite_engine)


@pytest.fixture
def users_definition():
    return build_definition("users", USERS_FIELDS, "shop")


@pytest.fixture
def checkpoints(connections):
    return CheckpointStore(connections, "shop")


@pytest.fixture
def executor(connections, users_definition, checkpoints):
    """Executor with freshly created tables."""
    executor = MutationExecutor(connections, [users_definition], checkpoints)
    executor.create_tables()
    return executor
