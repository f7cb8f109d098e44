"""End-to-end replication against a live MongoDB replica set and MySQL.

Set OPLOG_SYNC_TEST_SRC (a replica set URL naming a scratch database) and
OPLOG_SYNC_TEST_DIST (a scratch MySQL database) to run these tests.
"""

import os
import threading
import time
import uuid

import pymongo
import pytest
from sqlalchemy import select

from oplog_sync.settings import Settings, TailSettings
from oplog_sync.sync.orchestrator import SyncOrchestrator

SRC = os.getenv("OPLOG_SYNC_TEST_SRC")
DIST = os.getenv("OPLOG_SYNC_TEST_DIST")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not (SRC and DIST), reason="OPLOG_SYNC_TEST_SRC / OPLOG_SYNC_TEST_DIST not set"),
]


@pytest.fixture
def collection_name():
    return f"users_{uuid.uuid4().hex[:8]}"


@pytest.fixture
def source(collection_name):
    client = pymongo.MongoClient(SRC)
    collection = client.get_default_database()[collection_name]
    yield collection
    collection.drop()
    client.close()


@pytest.fixture
def orchestrator(collection_name):
    settings = Settings(
        src=SRC,
        dist=DIST,
        collections={collection_name: {"_id": "string", "name": "string", "age": "number"}},
        tail=TailSettings(retry_interval=0.2, max_empty_retries=5, reconnect_delay=0.2),
    )
    return SyncOrchestrator(settings, cli_mode=False)


def target_rows(orchestrator):
    definition = orchestrator.definitions[0]
    table = orchestrator.executor.table_for(definition)
    handle = orchestrator.connections.acquire()
    result = [dict(r) for r in handle.execute(select(table).order_by(table.c["_id"])).mappings()]
    handle.commit()
    return result


def wait_for(predicate, timeout=20):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.2)
    return False


def test_import_then_tail(source, orchestrator):
    source.insert_many([{"_id": "u1", "name": "Ann", "age": 30}, {"_id": "u2", "name": "Bob"}])

    worker = threading.Thread(target=orchestrator.import_and_start, kwargs={"forever": True})
    worker.start()
    try:
        assert wait_for(lambda: orchestrator.session.checkpoint > 0)
        source.insert_one({"_id": "u3", "name": "Cid", "age": 5})
        source.update_one({"_id": "u1"}, {"$set": {"age": 31}})
        source.delete_one({"_id": "u2"})
        assert wait_for(lambda: orchestrator.session.processed >= 3)
    finally:
        orchestrator.request_stop()
        worker.join(30)

    fresh = SyncOrchestrator(orchestrator.settings, cli_mode=False)
    try:
        assert target_rows(fresh) == [
            {"_id": "u1", "name": "Ann", "age": 31.0},
            {"_id": "u3", "name": "Cid", "age": 5.0},
        ]
        assert fresh.checkpoints.read_timestamp() == orchestrator.session.checkpoint
    finally:
        fresh.connections.close()
