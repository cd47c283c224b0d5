"""
Bulk Writers

Drain the batch queue into the target with binary COPY.

SessionBulkWriter keeps one COPY session open for its whole lifetime on a
single connection; the caller owns the transaction, so a whole multi-table run
can be committed or rolled back as one unit.

PooledBulkWriter opens one COPY session per batch on a pooled connection and
commits it immediately. Several of them run side by side for throughput; a
batch is either fully committed or not at all.
"""

from typing import List
import logging

from legacy_pg_migration.batching import Batch, BatchPool
from legacy_pg_migration.binary_copy import copy_records
from legacy_pg_migration.exceptions import BatchWriteError, PipelineCancelled
from legacy_pg_migration.progress import INSERTED, RECORDS_WRITTEN, MigrationCounters
from legacy_pg_migration.work_queue import BoundedWorkQueue, CancellationToken

logger = logging.getLogger(__name__)


class BulkWriter:
    """Shared bookkeeping for both writer modes."""

    def __init__(
        self,
        name: str,
        schema_name: str,
        table_name: str,
        columns: List[str],
        column_types: List[str],
        counters: MigrationCounters,
        batch_pool: BatchPool,
        token: CancellationToken,
    ):
        self.name = name
        self.schema_name = schema_name
        self.table_name = table_name
        self.columns = columns
        self.column_types = column_types
        self.counters = counters
        self.batch_pool = batch_pool
        self.token = token
        self.batches_written = 0

    def _account(self, batch: Batch) -> None:
        self.counters.increment(RECORDS_WRITTEN, len(batch.records))
        self.counters.increment(INSERTED, batch.source_rows)
        self.batches_written += 1
        self.batch_pool.release(batch)

    def run(self, batches: BoundedWorkQueue) -> int:
        raise NotImplementedError


class SessionBulkWriter(BulkWriter):
    """One COPY session on one caller-owned connection for the writer's lifetime."""

    def __init__(self, connection, **kwargs):
        super().__init__(**kwargs)
        self.connection = connection

    def _records(self, batches: BoundedWorkQueue):
        for batch in batches:
            yield from batch.records
            self._account(batch)

    def run(self, batches: BoundedWorkQueue) -> int:
        """
        Stream every queued batch into a single COPY.

        Returns:
            Number of records sent

        Raises:
            PipelineCancelled: The run was cancelled; the COPY was aborted
            BatchWriteError: The COPY failed
        """
        logger.info(f"{self.name}: opening COPY session for {self.schema_name}.{self.table_name}")
        try:
            sent = copy_records(
                self.connection,
                self.schema_name,
                self.table_name,
                self.columns,
                self.column_types,
                self._records(batches),
            )
        except PipelineCancelled:
            raise
        except Exception as e:
            if self.token.is_cancelled:
                raise PipelineCancelled(self.token.reason) from e
            logger.error(f"{self.name}: COPY into {self.schema_name}.{self.table_name} failed: {e}")
            raise BatchWriteError(f"COPY into {self.schema_name}.{self.table_name} failed: {e}") from e
        logger.info(f"{self.name}: COPY session closed after {sent:,} records in {self.batches_written} batches")
        return sent


class PooledBulkWriter(BulkWriter):
    """One committed COPY session per batch on a pooled connection."""

    def __init__(self, connection_pool, **kwargs):
        super().__init__(**kwargs)
        self.connection_pool = connection_pool

    def _write_batch(self, batch: Batch) -> int:
        conn = self.connection_pool.getconn()
        try:
            sent = copy_records(
                conn,
                self.schema_name,
                self.table_name,
                self.columns,
                self.column_types,
                batch.records,
            )
            conn.commit()
            return sent
        except Exception as e:
            try:
                conn.rollback()
            except Exception as rollback_error:
                logger.warning(f"{self.name}: rollback after failed batch also failed: {rollback_error}")
            logger.error(f"{self.name}: batch of {len(batch.records)} records failed: {e}")
            raise BatchWriteError(
                f"COPY batch into {self.schema_name}.{self.table_name} failed: {e}"
            ) from e
        finally:
            self.connection_pool.putconn(conn)

    def run(self, batches: BoundedWorkQueue) -> int:
        """
        Write batches until the queue drains.

        A batch already taken is finished even if cancellation arrives while
        it is being written; the next take then stops the writer.
        """
        sent = 0
        for batch in batches:
            sent += self._write_batch(batch)
            self._account(batch)
        logger.info(f"{self.name}: wrote {sent:,} records in {self.batches_written} batches")
        return sent
