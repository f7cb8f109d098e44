"""
Target-side checkpoint store for oplog positions.

One row per source database holds the packed timestamp of the last oplog
entry fully applied to the target.
"""

import logging
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from sqlalchemy import BigInteger, Column, MetaData, String, Table, insert, select, update
from sqlalchemy.schema import CreateTable, DropTable

from ...errors import CheckpointError, SyncError

if TYPE_CHECKING:
    from ...target.connection import ConnectionManager

logger = logging.getLogger(__name__)

CHECKPOINT_TABLE = "replication_checkpoint"
SERVICE_LENGTH = 20

metadata = MetaData()

checkpoint_table = Table(
    CHECKPOINT_TABLE,
    metadata,
    Column("service", String(SERVICE_LENGTH), primary_key=True),
    Column("timestamp", BigInteger, nullable=False, default=0),
)

checkpoint_saves_total = Counter(
    'oplog_sync_checkpoint_saves_total',
    'Total checkpoint saves',
    ['status']
)

checkpoint_loads_total = Counter(
    'oplog_sync_checkpoint_loads_total',
    'Total checkpoint loads',
    ['status']
)

checkpoint_timestamp = Gauge(
    'oplog_sync_checkpoint_timestamp',
    'Last persisted oplog timestamp (packed seconds << 32 | increment)',
    ['service']
)


class CheckpointStore:
    """
    Checkpoint persistence on the target database.

    Statements go through the shared ConnectionManager, so a checkpoint
    write is ordered after the mutation it follows.

    Monotonicity is NOT enforced here: ``update_timestamp`` overwrites. The
    tailer only ever moves it forward.

    Example:
        >>> store = CheckpointStore(connections, "shop")
        >>> store.update_timestamp(ts)
        >>> store.read_timestamp()
    """

    def __init__(self, connections: "ConnectionManager", service: str):
        """
        Args:
            connections: Target connection manager
            service: Source database identity (at most 20 characters)

        Raises:
            CheckpointError: If the service name does not fit the column
        """
        if not service or len(service) > SERVICE_LENGTH:
            raise CheckpointError(
                f"Source database name {service!r} must be 1-{SERVICE_LENGTH} characters"
            )
        self.connections = connections
        self.service = service
        self.table = checkpoint_table

    def ensure_table(self) -> None:
        """Create the checkpoint table if it does not exist yet."""
        self.connections.execute(CreateTable(self.table, if_not_exists=True))

    def recreate(self) -> None:
        """Drop and recreate the checkpoint table, then seed this service at zero."""
        self.connections.execute(DropTable(self.table, if_exists=True))
        self.connections.execute(CreateTable(self.table))
        self.reset()

    def reset(self) -> None:
        """Seed the checkpoint row to zero."""
        self.update_timestamp(0)

    def read_timestamp(self) -> int:
        """
        Load the checkpoint for this service.

        Returns:
            Packed timestamp, or 0 if nothing was recorded

        Raises:
            CheckpointError: If the read fails
        """
        statement = select(self.table.c.timestamp).where(self.table.c.service == self.service)
        try:
            value = self.connections.scalar(statement)
        except SyncError as e:
            checkpoint_loads_total.labels(status='error').inc()
            logger.error(
                f"Failed to read checkpoint: {e}",
                extra={"service": self.service}
            )
            raise CheckpointError(f"Failed to read checkpoint: {e}") from e

        if value is None:
            checkpoint_loads_total.labels(status='not_found').inc()
            logger.debug(
                f"No checkpoint found for {self.service}",
                extra={"service": self.service}
            )
            return 0

        checkpoint_loads_total.labels(status='success').inc()
        return int(value)

    def update_timestamp(self, ts: int) -> None:
        """
        Overwrite the checkpoint (inserting the row when missing).

        Raises:
            SyncConnectionError / StatementError: From the connection manager;
            the caller ends its session on either.
        """
        try:
            result = self.connections.execute(
                update(self.table)
                .where(self.table.c.service == self.service)
                .values(timestamp=ts)
            )
            if not result.rowcount:
                self.connections.execute(
                    insert(self.table).values(service=self.service, timestamp=ts)
                )
        except SyncError:
            checkpoint_saves_total.labels(status='error').inc()
            raise

        checkpoint_saves_total.labels(status='success').inc()
        checkpoint_timestamp.labels(service=self.service).set(ts)
        logger.debug(
            f"Saved checkpoint {ts} for {self.service}",
            extra={"service": self.service, "timestamp": ts}
        )
