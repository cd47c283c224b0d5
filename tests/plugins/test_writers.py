"""
Tests for the Bulk Writers

These tests validate that each COPY session is all-or-nothing and that the
insert counters only move for batches that were actually written.
"""

import pytest

from legacy_pg_migration.batching import Batch, BatchPool
from legacy_pg_migration.exceptions import BatchWriteError
from legacy_pg_migration.progress import INSERTED, RECORDS_WRITTEN, MigrationCounters
from legacy_pg_migration.work_queue import BoundedWorkQueue, CancellationToken
from legacy_pg_migration.writers import PooledBulkWriter, SessionBulkWriter


def _batch(*ids, source_rows=None):
    batch = Batch()
    for record_id in ids:
        batch.append((record_id, f"name-{record_id}"))
    batch.source_rows = len(ids) if source_rows is None else source_rows
    return batch


@pytest.fixture
def token():
    return CancellationToken()


@pytest.fixture
def counters():
    return MigrationCounters()


@pytest.fixture
def writer_kwargs(token, counters):
    return dict(
        name='writer-1',
        schema_name='public',
        table_name='items',
        columns=['item_id', 'name'],
        column_types=['int4', 'text'],
        counters=counters,
        batch_pool=BatchPool(),
        token=token,
    )


def _queue(token, *batches):
    batch_queue = BoundedWorkQueue('batch', max(1, len(batches)), token)
    for batch in batches:
        batch_queue.put(batch)
    batch_queue.complete()
    return batch_queue


class TestSessionBulkWriter:
    """Test the single-session writer."""

    def test_streams_all_batches_into_one_copy(self, database, target_conn, token, counters, writer_kwargs):
        """Test every batch goes through one COPY and stays uncommitted."""
        writer = SessionBulkWriter(target_conn, **writer_kwargs)

        sent = writer.run(_queue(token, _batch(1, 2), _batch(3)))

        assert sent == 3
        assert database.copy_calls == 1
        assert database.int_values('items', 0, staged_on=target_conn) == [1, 2, 3]
        assert database.rows('items') == []
        assert counters.get(INSERTED) == 3
        assert counters.get(RECORDS_WRITTEN) == 3
        assert writer.batches_written == 2

    def test_fan_out_batches_count_source_rows(self, target_conn, token, counters, writer_kwargs):
        """Test inserted counts source rows while records written counts target rows."""
        writer = SessionBulkWriter(target_conn, **writer_kwargs)

        writer.run(_queue(token, _batch(1001, 1002, 2001, source_rows=2)))

        assert counters.get(INSERTED) == 2
        assert counters.get(RECORDS_WRITTEN) == 3

    def test_failed_copy_keeps_nothing(self, database, target_conn, token, writer_kwargs):
        """Test a rejected record aborts the whole session."""
        database.fail_at_record = 3
        writer = SessionBulkWriter(target_conn, **writer_kwargs)

        with pytest.raises(BatchWriteError, match='public.items'):
            writer.run(_queue(token, _batch(1, 2), _batch(3, 4)))

        assert target_conn.staged.get('items', []) == []

    def test_empty_queue(self, database, target_conn, token, counters, writer_kwargs):
        """Test a table with no records still completes its session."""
        writer = SessionBulkWriter(target_conn, **writer_kwargs)
        assert writer.run(_queue(token)) == 0
        assert counters.get(INSERTED) == 0


class TestPooledBulkWriter:
    """Test the per-batch committing writer."""

    def test_commits_each_batch(self, database, connection_pool, token, counters, writer_kwargs):
        """Test every batch is its own committed COPY."""
        writer = PooledBulkWriter(connection_pool, **writer_kwargs)

        sent = writer.run(_queue(token, _batch(1, 2), _batch(3)))

        assert sent == 3
        assert database.copy_calls == 2
        assert database.int_values('items', 0) == [1, 2, 3]
        assert counters.get(INSERTED) == 3
        assert connection_pool.checked_out == 0

    def test_failed_batch_is_rolled_back(self, database, connection_pool, token, counters, writer_kwargs):
        """Test earlier batches stay committed and the failing batch leaves nothing."""
        database.fail_copy_calls = {2}
        writer = PooledBulkWriter(connection_pool, **writer_kwargs)

        with pytest.raises(BatchWriteError):
            writer.run(_queue(token, _batch(1, 2), _batch(3, 4), _batch(5)))

        assert database.int_values('items', 0) == [1, 2]
        assert counters.get(INSERTED) == 2
        assert connection_pool.checked_out == 0
