"""
Ordered Upsert Path

For content-versioned tables where target rows may already exist. The source
stream is read on one thread in sequence-id order and written with
INSERT ... ON CONFLICT DO UPDATE, so the last value seen for a logical key
wins. Rows are grouped into chunks; inside a chunk only the latest record per
key is kept, since PostgreSQL rejects a statement touching the same row twice.
Chunks are applied in order, which gives the same end state as applying every
record one by one.
"""

from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple
import itertools
import logging

from psycopg2 import sql

from legacy_pg_migration.exceptions import MappingError, SkipRow
from legacy_pg_migration.extraction import ExtractionStream
from legacy_pg_migration.field_rules import TransformContext
from legacy_pg_migration.mapping import TableMapping
from legacy_pg_migration.progress import (
    ERRORED,
    INSERTED,
    RECORDS_WRITTEN,
    SKIPPED,
    DiagnosticLog,
    MigrationCounters,
    MigrationResult,
    ProgressTracker,
)
from legacy_pg_migration.reference_cache import load_references
from legacy_pg_migration.settings import MigrationSettings
from legacy_pg_migration.transformer import RowTransformer

logger = logging.getLogger(__name__)


def build_upsert_sql(
    schema_name: str,
    table_name: str,
    columns: Sequence[str],
    conflict_columns: Sequence[str],
    row_count: int,
    update_columns: Optional[Sequence[str]] = None,
) -> sql.Composed:
    """
    INSERT ... ON CONFLICT statement for row_count rows.

    update_columns defaults to every non-conflict column. RETURNING (xmax = 0)
    tells inserted rows apart from updated ones.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    row_placeholder = sql.SQL('({})').format(sql.SQL(', ').join([sql.Placeholder()] * len(columns)))
    parts = dict(
        schema=sql.Identifier(schema_name),
        table=sql.Identifier(table_name),
        columns=sql.SQL(', ').join([sql.Identifier(c) for c in columns]),
        values=sql.SQL(', ').join([row_placeholder] * row_count),
        conflict=sql.SQL(', ').join([sql.Identifier(c) for c in conflict_columns]),
    )

    if update_columns:
        parts['update_set'] = sql.SQL(', ').join([
            sql.SQL('{} = EXCLUDED.{}').format(sql.Identifier(c), sql.Identifier(c))
            for c in update_columns
        ])
        template = (
            'INSERT INTO {schema}.{table} ({columns}) VALUES {values} '
            'ON CONFLICT ({conflict}) DO UPDATE SET {update_set} '
            'RETURNING (xmax = 0) AS inserted'
        )
    else:
        template = (
            'INSERT INTO {schema}.{table} ({columns}) VALUES {values} '
            'ON CONFLICT ({conflict}) DO NOTHING '
            'RETURNING (xmax = 0) AS inserted'
        )
    return sql.SQL(template).format(**parts)


def upsert_rows(
    postgres_conn,
    schema_name: str,
    table_name: str,
    columns: Sequence[str],
    conflict_columns: Sequence[str],
    rows: List[Tuple[Any, ...]],
    update_columns: Optional[Sequence[str]] = None,
) -> Tuple[int, int]:
    """
    Upsert rows in one statement.

    Args:
        postgres_conn: Active PostgreSQL connection
        schema_name: Target schema name
        table_name: Target table name
        columns: All column names, in record order
        conflict_columns: Columns of the unique constraint
        rows: Row tuples; no two may share a conflict key
        update_columns: Columns overwritten on conflict

    Returns:
        Tuple of (inserted_count, updated_count)
    """
    if not rows:
        return 0, 0

    missing = set(conflict_columns) - set(columns)
    if missing:
        raise ValueError(f"Conflict columns not in column list: {missing}")

    query = build_upsert_sql(schema_name, table_name, columns, conflict_columns, len(rows), update_columns)
    params = list(itertools.chain.from_iterable(rows))

    try:
        with postgres_conn.cursor() as cursor:
            cursor.execute(query, params)
            results = cursor.fetchall()
    except Exception as e:
        logger.error(f"Error upserting {len(rows)} rows into {schema_name}.{table_name}: {e}")
        raise

    inserted = sum(1 for r in results if r[0])
    return inserted, len(results) - inserted


class OrderedUpsertMigration:
    """Single-threaded, sequence-ordered upsert of one table."""

    def __init__(
        self,
        mapping: TableMapping,
        settings: MigrationSettings,
        source_conn,
        target_conn,
        encryptor=None,
        progress_listener=None,
    ):
        if mapping.upsert is None:
            raise MappingError(f"{mapping.name} has no upsert options")
        self.mapping = mapping
        self.settings = settings
        self.source_conn = source_conn
        self.target_conn = target_conn
        self.encryptor = encryptor
        self.counters = MigrationCounters()
        self.diagnostics = DiagnosticLog(mapping.name, settings.error_log_limit)
        self.tracker = ProgressTracker(mapping.name, self.counters, settings.progress_interval, progress_listener)
        self.rows_updated = 0
        self.statements = 0

    def _flush(self, pending: Dict[Hashable, Tuple[Any, ...]], source_rows: int) -> None:
        options = self.mapping.upsert
        if pending:
            _, updated = upsert_rows(
                self.target_conn,
                self.mapping.target_schema,
                self.mapping.target_table,
                self.mapping.target_column_names,
                options.conflict_columns,
                list(pending.values()),
                options.update_columns,
            )
            self.rows_updated += updated
            self.statements += 1
            self.counters.increment(RECORDS_WRITTEN, len(pending))
        self.counters.increment(INSERTED, source_rows)

    def run(self) -> MigrationResult:
        mapping, options = self.mapping, self.mapping.upsert
        mapping.validate()
        self.tracker.start()
        logger.info(f"Starting ordered upsert of {mapping.name} into {mapping.qualified_target}")

        key_sets, collections = load_references(
            self.target_conn, mapping.reference_keys, mapping.reference_collections
        )
        context = TransformContext(key_sets, collections, settings=self.settings, encryptor=self.encryptor)

        stream = ExtractionStream(
            self.source_conn,
            mapping.source_query,
            expected_columns=mapping.source_columns,
            binary_columns=mapping.binary_columns,
            max_binary_bytes=self.settings.max_binary_bytes,
            binary_chunk_bytes=self.settings.binary_chunk_bytes,
            skip_binary_payloads=self.settings.skip_binary_payloads,
            parameters=mapping.query_parameters(self.settings),
        ).open()
        try:
            transformer = RowTransformer(mapping, context, stream.index)
        except Exception:
            stream.close()
            raise

        sequence_ordinal = stream.index[options.sequence_column.lower()]
        names = mapping.target_column_names
        key_positions = [names.index(c) for c in options.conflict_columns]

        pending: Dict[Hashable, Tuple[Any, ...]] = {}
        pending_rows = 0
        last_sequence = None
        unkeyed = itertools.count()

        try:
            for row in stream:
                self.tracker.record_processed()
                sequence = row[sequence_ordinal]
                if sequence is not None:
                    if last_sequence is not None and sequence < last_sequence:
                        raise MappingError(
                            f"{mapping.name}: source rows are not ordered by {options.sequence_column} "
                            f"({sequence} after {last_sequence})"
                        )
                    last_sequence = sequence

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

                for record in records:
                    key = tuple(record[p] for p in key_positions)
                    if any(k is None for k in key):
                        # NULLs never conflict; keep each such record
                        key = ('__unkeyed__', next(unkeyed))
                    pending[key] = record
                pending_rows += 1

                if len(pending) >= options.chunk_size:
                    self._flush(pending, pending_rows)
                    pending = {}
                    pending_rows = 0

            self._flush(pending, pending_rows)
        finally:
            stream.close()

        elapsed = self.tracker.elapsed
        self.diagnostics.log_summary()
        self.tracker.emit(final=True)
        logger.info(
            f"{mapping.name}: {self.statements} upsert statements, {self.rows_updated:,} existing rows updated"
        )
        result = MigrationResult.from_counters(
            mapping.name, mapping.qualified_target, self.counters, self.diagnostics, elapsed, success=True
        )
        result.rows_updated = self.rows_updated
        return result
