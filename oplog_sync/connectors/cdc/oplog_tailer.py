"""
MongoDB oplog tailer with checkpointed crash recovery.

Responsibilities:
1. Copy mapped collections into the target (optional initial import)
2. Bootstrap or trust the persisted checkpoint
3. Tail ``local.oplog.rs`` with a tailable await-data cursor
4. Apply every entry, in oplog order, through the mutation executor
5. Advance the checkpoint after each applied entry
6. Reopen the cursor from the last checkpoint whenever a session ends
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional, Sequence

import pymongo
from prometheus_client import Counter, Gauge
from pymongo.errors import PyMongoError

from ...core.definitions import Definition
from ...errors import CheckpointError, OplogGapError, SyncError
from ...mongodb import connection as source
from ...mongodb.oplog import LogEntry, OpKind
from ...settings import TailSettings
from ...utils.logging import SessionContext
from .checkpoint_store import CheckpointStore

if TYPE_CHECKING:
    from ...sync.session import SyncSession
    from ...target.executor import MutationExecutor

logger = logging.getLogger(__name__)

CLEAN_OUTCOMES = frozenset({"closed", "idle", "stopped"})

oplog_entries_processed = Counter(
    'oplog_sync_entries_total',
    'Oplog entries applied to the target',
    ['namespace', 'operation']
)

oplog_entries_skipped = Counter(
    'oplog_sync_entries_skipped_total',
    'Oplog entries skipped',
    ['reason']
)

tail_sessions_total = Counter(
    'oplog_sync_tail_sessions_total',
    'Tail sessions by outcome',
    ['outcome']
)

imported_documents_total = Counter(
    'oplog_sync_imported_documents_total',
    'Documents copied during the initial import',
    ['collection']
)

tailer_state = Gauge(
    'oplog_sync_tailer_state',
    'Current tailer state (1 for the active state)',
    ['state']
)


class TailerState(str, Enum):
    IDLE = "idle"
    IMPORT_PENDING = "import_pending"
    TAILING = "tailing"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class OplogTailer:
    """
    Tail the oplog and apply entries to the target, one at a time.

    Ordering: entries are applied strictly in delivery order with no
    concurrent dispatch, so updates and deletes always see prior writes to
    the same key.

    Delivery: at-least-once. A session that dies mid-stream restarts from
    the last durable checkpoint; the entry at the checkpoint itself is
    skipped because the checkpoint is only written after it was applied.

    Thread Safety: NOT thread-safe. One instance per source/target pair;
    ``stop()`` may be called from another thread or a signal handler.

    Example:
        >>> tailer = OplogTailer(definitions, executor, checkpoints, src_url, TailSettings(), session)
        >>> tailer.bootstrap_checkpoint()
        >>> tailer.tail_forever()
    """

    def __init__(
        self,
        definitions: Sequence[Definition],
        executor: "MutationExecutor",
        checkpoints: CheckpointStore,
        source_url: str,
        config: TailSettings,
        session: "SyncSession",
        client_factory: Optional[Callable[[str], pymongo.MongoClient]] = None,
    ):
        """
        Args:
            definitions: Definition set; entries outside it are ignored
            executor: Applies mutations to the target
            checkpoints: Persists progress
            source_url: MongoDB URL of the source database
            config: Tail settings
            session: Shared replication state
            client_factory: Builds MongoClients (defaults to pymongo)
        """
        self.definitions = list(definitions)
        self.executor = executor
        self.checkpoints = checkpoints
        self.source_url = source_url
        self.db_name = source.source_database(source_url)
        self.config = config
        self.session = session
        self.client_factory = client_factory or source._get_client
        self._by_ns: Dict[str, Definition] = {d.ns: d for d in self.definitions}
        self._set_state(TailerState.IDLE)

    @property
    def namespaces(self):
        return [d.ns for d in self.definitions]

    def _set_state(self, state: TailerState) -> None:
        self.state = state
        for candidate in TailerState:
            tailer_state.labels(state=candidate.value).set(1 if candidate is state else 0)

    # ------------------------------------------------------------------
    # Checkpoint handling
    # ------------------------------------------------------------------

    def resume_from(self, ts: int) -> None:
        """Trust a persisted nonzero checkpoint without rewriting it."""
        self.session.checkpoint = ts
        logger.info(f"Resuming from checkpoint {ts}", extra={"checkpoint": ts})

    def bootstrap_checkpoint(self) -> int:
        """
        Set the checkpoint to the newest oplog entry on the source.

        Returns:
            The new checkpoint
        """
        client = self.session.hold(self.client_factory(self.source_url))
        try:
            ts = source.latest_oplog_timestamp(client)
        finally:
            self.session.release()
        self.checkpoints.update_timestamp(ts)
        self.session.checkpoint = ts
        logger.info(f"Checkpoint bootstrapped to latest oplog entry {ts}", extra={"checkpoint": ts})
        return ts

    def _advance(self, ts: int) -> None:
        """Persist a newer checkpoint; never moves it backward."""
        if ts <= self.session.checkpoint:
            logger.warning(
                f"Refusing to move checkpoint backward ({self.session.checkpoint} -> {ts})",
                extra={"checkpoint": self.session.checkpoint, "timestamp": ts}
            )
            return
        self.checkpoints.update_timestamp(ts)
        self.session.checkpoint = ts

    def _check_retention(self, client: pymongo.MongoClient, since: int) -> None:
        """
        Detect a checkpoint that fell out of the oplog window.

        Entries between the checkpoint and the oldest retained entry may have
        been lost, so the target can no longer be trusted.

        Raises:
            OplogGapError: If configured to fail on a gap
        """
        if not since:
            return
        oldest = source.oldest_oplog_timestamp(client)
        if oldest is None or oldest <= since:
            return
        message = (
            f"Checkpoint {since} is older than the oldest retained oplog entry {oldest}; "
            "changes may have been lost, run with --import to resynchronize"
        )
        if self.config.on_gap == "fail":
            logger.error(message, extra={"checkpoint": since, "oldest": oldest})
            raise OplogGapError(message)
        logger.warning(message, extra={"checkpoint": since, "oldest": oldest})

    # ------------------------------------------------------------------
    # Initial import
    # ------------------------------------------------------------------

    def import_all(self) -> None:
        """Copy every mapped collection, strictly one after another."""
        self._set_state(TailerState.IMPORT_PENDING)
        logger.info("Begin to import...")
        client = self.session.hold(self.client_factory(self.source_url))
        try:
            for definition in self.definitions:
                if self.session.stop_requested:
                    break
                self.import_collection(client, definition)
        finally:
            self.session.release()
        logger.info("Import done.")

    def import_collection(self, client: pymongo.MongoClient, definition: Definition) -> int:
        """
        Copy one collection.

        The cursor is pulled one document at a time and the next document is
        only requested once the previous insert returned, so at most one
        insert is in flight and memory stays bounded by the cursor batch.

        Returns:
            Number of documents copied
        """
        logger.info(f"Import records in {definition.ns}", extra={"namespace": definition.ns})
        count = 0
        with client[self.db_name][definition.name].find(batch_size=self.config.import_batch_size) as cursor:
            for document in cursor:
                self.executor.insert(definition, document)
                count += 1
                imported_documents_total.labels(collection=definition.name).inc()
                if self.session.stop_requested:
                    break
        logger.info(
            f"Imported {count} records into {definition.table}",
            extra={"namespace": definition.ns, "table": definition.table, "count": count}
        )
        return count

    # ------------------------------------------------------------------
    # Tailing
    # ------------------------------------------------------------------

    def process(self, entry: LogEntry) -> bool:
        """
        Apply one oplog entry and advance the checkpoint.

        Returns:
            True if the entry was applied, False if it was skipped
        """
        if entry.op is OpKind.NOOP:
            oplog_entries_skipped.labels(reason='noop').inc()
            return False
        if entry.ts <= self.session.checkpoint:
            # inclusive boundary redelivered after a reconnect
            oplog_entries_skipped.labels(reason='applied').inc()
            return False

        definition = self._by_ns.get(entry.ns)
        if definition is None:
            oplog_entries_skipped.labels(reason='unmapped').inc()
            return False

        if entry.op is OpKind.INSERT:
            self.executor.insert(definition, entry.o)
        elif entry.op is OpKind.UPDATE:
            delta = entry.update_delta()
            if delta is not None:
                id_value = (entry.o2 or {}).get(definition.id_name)
                self.executor.update(definition, id_value, *delta)
            else:
                self.executor.insert(definition, entry.o, replace=True)
        elif entry.op is OpKind.DELETE:
            self.executor.remove(definition, entry.o.get(definition.id_name))

        self._advance(entry.ts)
        oplog_entries_processed.labels(namespace=entry.ns, operation=entry.op.name.lower()).inc()

        self.session.processed += 1
        if self.session.processed % self.config.progress_interval == 0:
            logger.info(
                f"Processing item#{self.session.processed}",
                extra={"processed": self.session.processed, "checkpoint": self.session.checkpoint}
            )
        return True

    def tail(self) -> str:
        """
        Run one tailing session.

        Returns when the cursor closes, stays idle past its retry budget,
        an entry fails to apply, or stop is requested. The dedicated source
        client is released in every case.

        Returns:
            The session outcome: "closed", "idle", "processing_error" or "stopped"

        Raises:
            PyMongoError: If the cursor cannot be opened or errors out
            OplogGapError: If the checkpoint fell out of the oplog window
        """
        since = self.session.checkpoint
        with SessionContext():
            logger.info(f"Begin to watch... (from {since})", extra={"checkpoint": since})
            self._set_state(TailerState.TAILING)
            client = self.session.hold(self.client_factory(self.source_url))
            try:
                self._check_retention(client, since)
                cursor = source.open_oplog_cursor(
                    client, self.namespaces, since, self.config.max_await_time_ms
                )
                try:
                    outcome = self._drain(cursor)
                finally:
                    cursor.close()
            except PyMongoError as e:
                tail_sessions_total.labels(outcome='error').inc()
                if self.session.stop_requested:
                    logger.info(f"Source closed on stop: {e}")
                    return "stopped"
                logger.error(f"MongoDB error: {e}")
                raise
            finally:
                self.session.release()
            tail_sessions_total.labels(outcome=outcome).inc()
            return outcome

    def _drain(self, cursor) -> str:
        """Apply entries until the cursor ends; returns the session outcome."""
        idle_polls = 0
        while not self.session.stop_requested:
            received = False
            for raw in cursor:
                received = True
                entry = LogEntry.from_raw(raw)
                try:
                    self.process(entry)
                except Exception as e:
                    logger.error(
                        f"Processing error: {e}",
                        exc_info=not isinstance(e, SyncError),
                        extra={"namespace": entry.ns, "timestamp": entry.ts, "op": entry.op.value}
                    )
                    return "processing_error"
                if self.session.stop_requested:
                    return "stopped"

            if not cursor.alive:
                logger.info("Stream closed....")
                return "closed"

            idle_polls = 0 if received else idle_polls + 1
            if idle_polls > self.config.max_empty_retries:
                logger.info(f"No oplog activity after {idle_polls - 1} retries, recycling cursor")
                return "idle"
            self.session.stop_event.wait(self.config.retry_interval)
        return "stopped"

    def reconnect_delay(self, attempt: int) -> float:
        """Delay before reopening a session after ``attempt`` unproductive ones."""
        delay = self.config.reconnect_delay * (self.config.reconnect_backoff ** attempt)
        return min(delay, self.config.max_reconnect_delay)

    def tail_forever(self) -> None:
        """
        Re-run ``tail()`` whenever a session ends, until stop is requested.

        Source and target errors end the session, not the loop. Only
        checkpoint errors (including a detected oplog gap) escape.

        Raises:
            CheckpointError: Fatal checkpoint problems
        """
        sessions = 0
        attempt = 0
        try:
            while not self.session.stop_requested:
                logger.info("Reconnect to MongoDB..." if sessions else "Connect to MongoDB...")
                sessions += 1
                processed_before = self.session.processed
                outcome = "error"
                try:
                    outcome = self.tail()
                except CheckpointError:
                    raise
                except (PyMongoError, SyncError) as e:
                    logger.warning(
                        f"Tail session ended with error: {e}",
                        extra={"error_type": type(e).__name__, "checkpoint": self.session.checkpoint}
                    )

                if self.session.stop_requested:
                    break
                # a quiet source ends sessions cleanly; only failures back off
                clean = outcome in CLEAN_OUTCOMES or self.session.processed > processed_before
                attempt = 0 if clean else attempt + 1
                delay = self.reconnect_delay(attempt)
                self._set_state(TailerState.RECONNECTING)
                logger.info(
                    f"Reopening tail session in {delay:.1f}s from checkpoint {self.session.checkpoint}",
                    extra={"delay_seconds": delay, "checkpoint": self.session.checkpoint}
                )
                if self.session.stop_event.wait(delay):
                    break
        finally:
            self._set_state(TailerState.STOPPED)

    def stop(self) -> None:
        """Request a stop and release the held source client."""
        logger.info("Stopping oplog tailer")
        self.session.stop_event.set()
        self.session.release()
