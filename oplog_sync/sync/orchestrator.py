"""
Top-level sequencing of import, checkpoint bootstrap and tailing.
"""

import logging
import sys
from typing import Callable, Optional

import pymongo

from ..connectors.cdc.checkpoint_store import CheckpointStore
from ..connectors.cdc.oplog_tailer import OplogTailer
from ..core.definitions import build_definitions
from ..mongodb.connection import source_database
from ..settings import Settings
from ..target.connection import ConnectionManager
from ..target.executor import MutationExecutor
from .session import SyncSession

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """
    Wires the definition set, target, checkpoint store and tailer together.

    Two run modes:
    - CLI mode: any unrecovered failure is logged and the process exits
      with status 1; a clean stop exits with status 0.
    - Embedded mode: the source client and target connection are released
      and the failure is re-raised to the caller.
    """

    def __init__(
        self,
        settings: Settings,
        cli_mode: bool = True,
        connections: Optional[ConnectionManager] = None,
        client_factory: Optional[Callable[[str], pymongo.MongoClient]] = None,
    ):
        self.settings = settings
        self.cli_mode = cli_mode
        self.db_name = source_database(settings.src)
        self.definitions = build_definitions(
            settings.collections,
            self.db_name,
            prefix=settings.prefix,
            field_case=settings.field_case,
            inclusions=settings.inclusions,
            exclusions=settings.exclusions,
        )
        self.session = SyncSession()
        self.connections = connections or ConnectionManager(settings.dist)
        self.checkpoints = CheckpointStore(self.connections, self.db_name)
        self.executor = MutationExecutor(
            self.connections,
            self.definitions,
            self.checkpoints,
            replay_inserts_as_replace=settings.replay_inserts_as_replace,
        )
        self.tailer = OplogTailer(
            self.definitions,
            self.executor,
            self.checkpoints,
            settings.src,
            settings.tail,
            self.session,
            client_factory=client_factory,
        )

    def start(self, forever: bool = True) -> None:
        """Resume from the persisted checkpoint (bootstrapping if none) and tail."""
        logger.info(
            f"Starting sync of {len(self.definitions)} collections from {self.db_name}",
            extra={"collections": [d.name for d in self.definitions], "forever": forever}
        )
        try:
            self.checkpoints.ensure_table()
            ts = self.checkpoints.read_timestamp()
            if ts:
                self.tailer.resume_from(ts)
            else:
                self.tailer.bootstrap_checkpoint()
            self._run_tail(forever)
        except Exception as e:
            self.shutdown(e)
        else:
            self.shutdown()

    def import_and_start(self, forever: bool = True) -> None:
        """Recreate all tables, copy every collection, then bootstrap and tail."""
        logger.info(
            f"Starting full import of {len(self.definitions)} collections from {self.db_name}",
            extra={"collections": [d.name for d in self.definitions], "forever": forever}
        )
        try:
            self.executor.create_tables()
            self.tailer.import_all()
            if self.session.stop_requested:
                logger.info("Stop requested during import")
            else:
                self.tailer.bootstrap_checkpoint()
                self._run_tail(forever)
        except Exception as e:
            self.shutdown(e)
        else:
            self.shutdown()

    def _run_tail(self, forever: bool) -> None:
        if forever:
            self.tailer.tail_forever()
        else:
            self.tailer.tail()

    def request_stop(self) -> None:
        """Ask the running import or tail loop to stop at the next entry."""
        self.tailer.stop()

    def shutdown(self, err: Optional[BaseException] = None) -> None:
        """
        Release resources and end the run.

        Args:
            err: The unrecovered failure, if any

        Raises:
            BaseException: ``err`` itself, in embedded mode
        """
        self.session.release()
        self.connections.close()

        if self.cli_mode:
            if err is not None:
                logger.error(
                    f"Sync failed: {err}",
                    exc_info=err,
                    extra={"error_type": type(err).__name__, "checkpoint": self.session.checkpoint}
                )
                sys.exit(1)
            logger.info("Sync stopped", extra={"checkpoint": self.session.checkpoint})
            sys.exit(0)

        if err is not None:
            logger.error(f"Sync failed: {err}", extra={"error_type": type(err).__name__})
            raise err
        logger.info("Sync stopped", extra={"checkpoint": self.session.checkpoint})
