"""
Migration Pipeline

Generic bulk pipeline for one table, parameterized by a TableMapping:

    ExtractionStream -> raw queue -> transform workers -> batch queue -> bulk writers

The extraction runs on the calling thread, the only user of the source
connection. Transform workers and writers run on a thread pool; each stage is
a Future, and the first stage failure is pushed onto an error channel, cancels
every other stage and is re-raised once all of them have unwound.
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, List, Optional
import contextlib
import logging
import queue
import threading

from legacy_pg_migration.batching import BatchPool
from legacy_pg_migration.exceptions import (
    MigrationCancelled,
    PipelineCancelled,
    SkipRow,
)
from legacy_pg_migration.extraction import ExtractionStream
from legacy_pg_migration.field_rules import TransformContext
from legacy_pg_migration.mapping import TableMapping
from legacy_pg_migration.progress import (
    ERRORED,
    SKIPPED,
    DiagnosticLog,
    MigrationCounters,
    MigrationResult,
    ProgressEvent,
    ProgressTracker,
)
from legacy_pg_migration.reference_cache import load_references
from legacy_pg_migration.settings import MigrationSettings
from legacy_pg_migration.transformer import RowTransformer
from legacy_pg_migration.work_queue import BoundedWorkQueue, CancellationToken
from legacy_pg_migration.writers import PooledBulkWriter, SessionBulkWriter

logger = logging.getLogger(__name__)


class MigrationPipeline:
    """
    Run one table migration through the parallel bulk path.

    Exactly one of target_conn (single session writer, caller owns the
    transaction) or connection_pool (pooled writers, one commit per batch)
    must be given.
    """

    def __init__(
        self,
        mapping: TableMapping,
        settings: MigrationSettings,
        source_conn,
        target_conn=None,
        connection_pool=None,
        writer_count: int = 1,
        encryptor=None,
        progress_listener: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        if (target_conn is None) == (connection_pool is None):
            raise ValueError("Provide exactly one of target_conn or connection_pool")
        if target_conn is not None and writer_count != 1:
            raise ValueError("A shared target connection supports a single writer only")

        self.mapping = mapping
        self.settings = settings
        self.source_conn = source_conn
        self.target_conn = target_conn
        self.connection_pool = connection_pool
        self.writer_count = writer_count
        self.encryptor = encryptor
        self.token = CancellationToken()
        self.counters = MigrationCounters()
        self.diagnostics = DiagnosticLog(mapping.name, settings.error_log_limit)
        self.tracker = ProgressTracker(mapping.name, self.counters, settings.progress_interval, progress_listener)
        self._errors: queue.SimpleQueue = queue.SimpleQueue()
        self._caller_cancelled = threading.Event()
        self._report_lock = threading.Lock()
        self._reported = set()
        self.raw_queue: Optional[BoundedWorkQueue] = None
        self.batch_queue: Optional[BoundedWorkQueue] = None

    def cancel(self) -> None:
        """Abort the run from another thread."""
        self._caller_cancelled.set()
        self.token.cancel('cancelled by caller')

    @contextlib.contextmanager
    def _reference_connection(self):
        if self.target_conn is not None:
            yield self.target_conn
            return
        conn = self.connection_pool.getconn()
        try:
            yield conn
        finally:
            try:
                conn.rollback()
            finally:
                self.connection_pool.putconn(conn)

    def _on_stage_done(self, stage: str, future: Future) -> None:
        error = future.exception()
        if error is None or isinstance(error, PipelineCancelled):
            return
        with self._report_lock:
            if id(future) in self._reported:
                return
            self._reported.add(id(future))
            self._errors.put((stage, error))
        if self.token.cancel(f"{stage} failed: {error}"):
            logger.error(f"{self.mapping.name}: {stage} failed, cancelling remaining stages: {error}")

    def _transform_worker(self, worker_id: int, transformer: RowTransformer, pool: BatchPool) -> None:
        batch_size = self.mapping.batch_size(self.settings)
        byte_budget = self.settings.batch_byte_budget
        batch = pool.acquire()
        try:
            for row in self.raw_queue:
                self.tracker.record_processed()
                try:
                    records = transformer.transform(row)
                except SkipRow as skip:
                    self.counters.increment(SKIPPED)
                    self.diagnostics.record_skip(skip.reason, skip.detail)
                    continue
                except Exception as e:
                    self.counters.increment(ERRORED)
                    self.diagnostics.record_error(e, row)
                    continue

                last = len(records) - 1
                for i, record in enumerate(records):
                    batch.append(record, row.payload_bytes if i == 0 else 0)
                    if i < last and batch.is_full(batch_size, byte_budget):
                        self.batch_queue.put(batch)
                        batch = pool.acquire()
                batch.source_rows += 1
                if batch.is_full(batch_size, byte_budget):
                    self.batch_queue.put(batch)
                    batch = pool.acquire()

            if batch.records:
                self.batch_queue.put(batch)
            else:
                pool.release(batch)
        except PipelineCancelled:
            # Partial batch is discarded
            logger.debug(f"{self.mapping.name}: transform worker {worker_id} cancelled")

    def _build_writers(self, pool: BatchPool) -> List:
        common = dict(
            schema_name=self.mapping.target_schema,
            table_name=self.mapping.target_table,
            columns=self.mapping.target_column_names,
            column_types=self.mapping.column_types,
            counters=self.counters,
            batch_pool=pool,
            token=self.token,
        )
        if self.target_conn is not None:
            return [SessionBulkWriter(self.target_conn, name=f"{self.mapping.name}-writer-1", **common)]
        return [
            PooledBulkWriter(self.connection_pool, name=f"{self.mapping.name}-writer-{i + 1}", **common)
            for i in range(self.writer_count)
        ]

    def _produce(self, stream: ExtractionStream) -> None:
        try:
            for row in stream:
                self.raw_queue.put(row)
        except PipelineCancelled:
            pass
        except Exception as e:
            self._errors.put(('extraction', e))
            self.token.cancel(f"extraction failed: {e}")
            logger.error(f"{self.mapping.name}: extraction failed: {e}")
        finally:
            stream.close()
            self.raw_queue.complete()

    def run(self) -> MigrationResult:
        """
        Migrate the table.

        Returns:
            MigrationResult with success=True

        Raises:
            MappingError: The mapping or source query is inconsistent
            BatchWriteError: A bulk write failed
            MigrationCancelled: cancel() was called
            Exception: The first failure of any stage
        """
        mapping, settings = self.mapping, self.settings
        mapping.validate()
        self.tracker.start()
        logger.info(
            f"Starting migration of {mapping.name} into {mapping.qualified_target} "
            f"({settings.transform_workers} transform workers, {self.writer_count} writers)"
        )

        with self._reference_connection() as conn:
            key_sets, collections = load_references(conn, mapping.reference_keys, mapping.reference_collections)
        context = TransformContext(key_sets, collections, settings=settings, encryptor=self.encryptor)

        stream = ExtractionStream(
            self.source_conn,
            mapping.source_query,
            expected_columns=mapping.source_columns,
            binary_columns=mapping.binary_columns,
            max_binary_bytes=settings.max_binary_bytes,
            binary_chunk_bytes=settings.binary_chunk_bytes,
            skip_binary_payloads=settings.skip_binary_payloads,
            parameters=mapping.query_parameters(settings),
        ).open()
        try:
            transformer = RowTransformer(mapping, context, stream.index)
        except Exception:
            stream.close()
            raise

        self.raw_queue = BoundedWorkQueue('raw', settings.raw_queue_capacity, self.token)
        self.batch_queue = BoundedWorkQueue('batch', settings.batch_queue_capacity, self.token)
        pool = BatchPool(preallocate=max(4, settings.transform_workers * 2))
        writers = self._build_writers(pool)

        with ThreadPoolExecutor(
            max_workers=settings.transform_workers + len(writers),
            thread_name_prefix=f"migrate-{mapping.name}",
        ) as executor:
            transform_futures = []
            for i in range(settings.transform_workers):
                future = executor.submit(self._transform_worker, i + 1, transformer, pool)
                future.add_done_callback(lambda f, n=i + 1: self._on_stage_done(f"transform worker {n}", f))
                transform_futures.append(future)
            writer_futures = []
            for writer in writers:
                future = executor.submit(writer.run, self.batch_queue)
                future.add_done_callback(lambda f, n=writer.name: self._on_stage_done(n, f))
                writer_futures.append(future)

            self._produce(stream)
            wait(transform_futures)
            # Callbacks may still be in flight; report before releasing the writers
            for n, future in enumerate(transform_futures, start=1):
                self._on_stage_done(f"transform worker {n}", future)
            self.batch_queue.complete()
            wait(writer_futures)

        elapsed = self.tracker.elapsed
        self.diagnostics.log_summary()

        if not self._errors.empty():
            stage, error = self._errors.get()
            logger.error(f"Migration of {mapping.name} failed in {stage} after {elapsed:.2f}s: {error}")
            raise error
        if self._caller_cancelled.is_set():
            raise MigrationCancelled(f"Migration of {mapping.name} was cancelled")

        self.tracker.emit(final=True)
        result = MigrationResult.from_counters(
            mapping.name, mapping.qualified_target, self.counters, self.diagnostics, elapsed, success=True
        )
        if stream.oversized_payloads:
            logger.warning(f"{mapping.name}: {stream.oversized_payloads} binary payloads exceeded the size ceiling")
        return result
