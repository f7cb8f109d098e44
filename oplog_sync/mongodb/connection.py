"""
Source-side MongoDB access: clients, oplog positions and tailing cursors.

The oplog lives in ``local.oplog.rs`` and is only present on replica set
members, so the source URL must point at a replica set (a single-node one
is fine).
"""

import logging
from typing import Iterable, Optional

import pymongo
from pymongo import CursorType
from pymongo.collection import Collection
from pymongo.cursor import Cursor
from pymongo.errors import AutoReconnect, ConnectionFailure, InvalidURI
from pymongo.uri_parser import parse_uri
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import CheckpointError, SyncError
from .oplog import int_to_ts, ts_to_int

logger = logging.getLogger(__name__)

OPLOG_DATABASE = "local"
OPLOG_COLLECTION = "oplog.rs"


def _get_client(mongo_uri: str) -> pymongo.MongoClient:
    """Create a MongoClient from a URI. Caller is responsible for closing it.

    Looking up ``pymongo.MongoClient`` at call time lets tests monkeypatch it.
    """
    return pymongo.MongoClient(mongo_uri)


def source_database(mongo_uri: str) -> str:
    """
    Database name from the source URL; it also identifies the checkpoint row.

    Example:
        >>> source_database("mongodb://localhost:27017/shop?replicaSet=rs0")
        'shop'
    """
    try:
        parsed = parse_uri(mongo_uri)
    except (InvalidURI, ValueError) as e:
        raise SyncError(f"Invalid source URL: {e}") from e
    database = parsed.get("database")
    if not database:
        raise SyncError(f"Source URL must name a database: {mongo_uri!r}")
    return database


def oplog_collection(client: pymongo.MongoClient) -> Collection:
    return client[OPLOG_DATABASE][OPLOG_COLLECTION]


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((AutoReconnect, ConnectionFailure)),
    reraise=True,
)
def latest_oplog_timestamp(client: pymongo.MongoClient) -> int:
    """
    Packed timestamp of the newest oplog entry.

    Raises:
        CheckpointError: If the oplog is empty or missing (not a replica set)
    """
    entry = oplog_collection(client).find_one({}, sort=[("$natural", pymongo.DESCENDING)])
    if not entry:
        raise CheckpointError("Source oplog is empty or missing; is the source a replica set?")
    return ts_to_int(entry["ts"])


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((AutoReconnect, ConnectionFailure)),
    reraise=True,
)
def oldest_oplog_timestamp(client: pymongo.MongoClient) -> Optional[int]:
    """Packed timestamp of the oldest retained oplog entry, or None if empty."""
    entry = oplog_collection(client).find_one({}, sort=[("$natural", pymongo.ASCENDING)])
    if not entry:
        return None
    return ts_to_int(entry["ts"])


def open_oplog_cursor(
    client: pymongo.MongoClient,
    namespaces: Iterable[str],
    since: int,
    max_await_time_ms: int = 1000,
) -> Cursor:
    """
    Open a tailable, await-data cursor over entries newer than ``since`` in
    the given namespaces.
    """
    filters = {
        "ns": {"$in": list(namespaces)},
        "ts": {"$gt": int_to_ts(since)},
    }
    return oplog_collection(client).find(
        filters,
        cursor_type=CursorType.TAILABLE_AWAIT,
        max_await_time_ms=max_await_time_ms,
    )
