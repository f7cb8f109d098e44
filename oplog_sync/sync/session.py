"""
Mutable replication state shared between the orchestrator and the tailer.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

import pymongo

logger = logging.getLogger(__name__)


@dataclass
class SyncSession:
    """
    Replication progress plus the source client currently held.

    ``checkpoint`` mirrors the last durable checkpoint; ``client`` is the
    dedicated MongoClient of the running import or tail session, if any.
    """
    checkpoint: int = 0
    processed: int = 0
    client: Optional[pymongo.MongoClient] = None
    stop_event: threading.Event = field(default_factory=threading.Event)

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def hold(self, client: pymongo.MongoClient) -> pymongo.MongoClient:
        self.client = client
        return client

    def release(self) -> None:
        """Close the held source client, if any."""
        client, self.client = self.client, None
        if client is not None:
            client.close()
            logger.debug("Source client released")
