"""
Tests for the Ordered Upsert Path

These tests validate statement construction, in-chunk deduplication,
last-write-wins ordering and the out-of-order guard.
"""

from unittest.mock import MagicMock

import pytest
from psycopg2 import sql

from legacy_pg_migration.exceptions import MappingError
from legacy_pg_migration.field_rules import Direct, FanOutId, FanOutValue
from legacy_pg_migration.mapping import FanOut, TableMapping, TargetColumn, UpsertOptions
from legacy_pg_migration.settings import MigrationSettings
from legacy_pg_migration.upsert import OrderedUpsertMigration, build_upsert_sql, upsert_rows


class RecordingUpsertCursor:
    def __init__(self, connection):
        self.connection = connection
        self._result = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query, params=None):
        conn = self.connection
        if isinstance(query, str) and query in conn.lookups:
            self._result = [(value,) for value in conn.lookups[query]]
            return
        conn.statements.append((query, list(params or [])))
        width = len(conn.columns)
        rows = [tuple(params[i:i + width]) for i in range(0, len(params), width)]
        keys = [tuple(row[p] for p in conn.key_positions) for row in rows]
        assert len(set(keys)) == len(keys), 'statement touches the same key twice'
        self._result = []
        for key, row in zip(keys, rows):
            self._result.append((key not in conn.table,))
            conn.table[key] = row

    def fetchall(self):
        return self._result

    def close(self):
        pass


class RecordingUpsertConnection:
    """Applies upsert statements to an in-memory table keyed by the conflict columns.

    Reference queries listed in lookups answer with single-column rows.
    """

    autocommit = True

    def __init__(self, columns, conflict_columns, lookups=None):
        self.columns = columns
        self.lookups = dict(lookups or {})
        self.key_positions = [columns.index(c) for c in conflict_columns]
        self.table = {}
        self.statements = []

    def cursor(self):
        return RecordingUpsertCursor(self)


@pytest.fixture
def lot_price_mapping():
    """Lot prices keyed by (event, supplier), ordered by update id."""
    return TableMapping(
        name='lot_price',
        description='Lot prices',
        source_query='SELECT EventId, SupplierId, Total, UpdateId FROM LOTPRICE ORDER BY UpdateId',
        source_columns=['EventId', 'SupplierId', 'Total', 'UpdateId'],
        target_table='lot_price',
        upsert=UpsertOptions(conflict_columns=['event_id', 'supplier_id'], sequence_column='UpdateId',
                             update_columns=['price'], chunk_size=2),
        columns=[
            TargetColumn('event_id', 'int4', Direct('EventId')),
            TargetColumn('supplier_id', 'int4', Direct('SupplierId')),
            TargetColumn('price', 'numeric', Direct('Total')),
        ],
    )


@pytest.fixture
def upsert_settings():
    return MigrationSettings(progress_interval=100)


def _target_for(mapping):
    return RecordingUpsertConnection(mapping.target_column_names, mapping.upsert.conflict_columns)


class TestBuildUpsertSql:
    """Test statement construction."""

    def _text(self, composed):
        parts = []
        for part in composed.seq:
            if isinstance(part, sql.SQL):
                parts.append(part.string)
        return ''.join(parts)

    def test_update_clause(self):
        """Test conflicts update the chosen columns and report inserts."""
        text = self._text(build_upsert_sql('public', 'lot_price', ['a', 'b', 'c'], ['a'], 2, ['c']))
        assert 'ON CONFLICT' in text
        assert 'DO UPDATE SET' in text
        assert 'RETURNING (xmax = 0)' in text

    def test_do_nothing_without_update_columns(self):
        """Test an empty update list keeps existing rows untouched."""
        text = self._text(build_upsert_sql('public', 'lot_price', ['a'], ['a'], 1))
        assert 'DO NOTHING' in text


class TestUpsertRows:
    """Test single upsert statements."""

    def test_empty_rows(self):
        """Test nothing is executed for an empty chunk."""
        conn = MagicMock()
        assert upsert_rows(conn, 'public', 't', ['a'], ['a'], []) == (0, 0)
        conn.cursor.assert_not_called()

    def test_conflict_columns_must_be_columns(self):
        """Test the conflict key must be part of the column list."""
        with pytest.raises(ValueError, match='Conflict columns'):
            upsert_rows(MagicMock(), 'public', 't', ['a', 'b'], ['z'], [(1, 2)])

    def test_counts_inserted_and_updated(self):
        """Test RETURNING flags are split into inserted and updated counts."""
        conn = MagicMock()
        cursor = conn.cursor.return_value.__enter__.return_value
        cursor.fetchall.return_value = [(True,), (False,), (True,)]

        inserted, updated = upsert_rows(conn, 'public', 't', ['a', 'b'], ['a'], [(1, 2), (3, 4), (5, 6)])

        assert (inserted, updated) == (2, 1)
        params = cursor.execute.call_args[0][1]
        assert params == [1, 2, 3, 4, 5, 6]


class TestOrderedUpsertMigration:
    """Test the ordered, single-threaded upsert run."""

    def test_last_write_wins(self, make_source, lot_price_mapping, upsert_settings):
        """Test repeated keys end with the value of the highest sequence id."""
        source = make_source(lot_price_mapping.source_columns, [
            (1, 10, 100, 1),
            (1, 10, 110, 2),
            (1, 11, 200, 3),
            (1, 10, 120, 4),
            (2, 10, 300, 5),
        ])
        target = _target_for(lot_price_mapping)

        result = OrderedUpsertMigration(lot_price_mapping, upsert_settings, source, target).run()

        assert target.table == {(1, 10): (1, 10, 120), (1, 11): (1, 11, 200), (2, 10): (2, 10, 300)}
        assert result.records_processed == 5
        assert result.records_inserted == 5
        assert result.is_conserved
        assert result.rows_updated == 1

    def test_chunks_deduplicate_keys(self, make_source, lot_price_mapping, upsert_settings):
        """Test one chunk never sends the same key twice."""
        rows = [(1, 10, 100 + i, i) for i in range(1, 8)]
        source = make_source(lot_price_mapping.source_columns, rows)
        target = _target_for(lot_price_mapping)

        OrderedUpsertMigration(lot_price_mapping, upsert_settings, source, target).run()

        # All seven rows collapse into one pending record
        assert len(target.statements) == 1
        assert target.table == {(1, 10): (1, 10, 107)}

    def test_null_keys_are_not_merged(self, make_source, lot_price_mapping, upsert_settings, monkeypatch):
        """Test records with a null key are each sent, since nulls never conflict."""
        source = make_source(lot_price_mapping.source_columns, [(1, None, 5, 1), (1, None, 6, 2)])
        sent = []

        def fake_upsert(conn, schema, table, columns, conflict, rows, update_columns=None):
            sent.extend(rows)
            return len(rows), 0

        monkeypatch.setattr('legacy_pg_migration.upsert.upsert_rows', fake_upsert)
        OrderedUpsertMigration(lot_price_mapping, upsert_settings, source, MagicMock()).run()

        assert sent == [(1, None, 5), (1, None, 6)]

    def test_out_of_order_source_fails(self, make_source, lot_price_mapping, upsert_settings):
        """Test rows arriving out of sequence order abort the run."""
        source = make_source(lot_price_mapping.source_columns, [(1, 10, 100, 5), (1, 10, 90, 3)])

        with pytest.raises(MappingError, match='not ordered'):
            OrderedUpsertMigration(lot_price_mapping, upsert_settings, source, _target_for(lot_price_mapping)).run()

    def test_requires_upsert_options(self, orders_mapping, upsert_settings, make_source):
        """Test tables without upsert options are refused."""
        with pytest.raises(MappingError):
            OrderedUpsertMigration(orders_mapping, upsert_settings, make_source([], []), MagicMock())

    def test_fan_out_upsert(self, make_source, upsert_settings):
        """Test fanned-out records are upserted under their generated ids."""
        mapping = TableMapping(
            name='headers',
            description='Headers',
            source_query='SELECT Id, H1, H2 FROM HEADERS ORDER BY Id',
            source_columns=['Id', 'H1', 'H2'],
            target_table='headers',
            fan_out=FanOut(base_source='Id', expand=lambda *h: [x for x in h if x], expand_sources=['H1', 'H2']),
            upsert=UpsertOptions(conflict_columns=['header_id'], sequence_column='Id'),
            columns=[
                TargetColumn('header_id', 'int8', FanOutId()),
                TargetColumn('header', 'text', FanOutValue()),
            ],
        )
        source = make_source(mapping.source_columns, [(1, 'Qty', 'Rate'), (2, None, None), (3, 'Amount', None)])
        target = _target_for(mapping)

        result = OrderedUpsertMigration(mapping, upsert_settings, source, target).run()

        assert target.table == {(1001,): (1001, 'Qty'), (1002,): (1002, 'Rate'), (3001,): (3001, 'Amount')}
        assert result.records_inserted == 2
        assert result.records_skipped == 1
        assert result.target_rows_written == 3

    def test_fan_out_rerun_updates_in_place(self, make_source, upsert_settings):
        """Test a second run over per-company copies updates the same rows instead of adding more."""
        companies_query = 'SELECT company_id FROM company_master'
        mapping = TableMapping(
            name='currencies',
            description='Currencies per company',
            source_query='SELECT Id, Code FROM CURRENCY ORDER BY Id',
            source_columns=['Id', 'Code'],
            target_table='currencies',
            reference_collections={'companies': companies_query},
            fan_out=FanOut(base_source='Id', collection='companies'),
            upsert=UpsertOptions(conflict_columns=['currency_id'], sequence_column='Id',
                                 update_columns=['code']),
            columns=[
                TargetColumn('currency_id', 'int4', FanOutId()),
                TargetColumn('company_id', 'int4', FanOutValue()),
                TargetColumn('code', 'text', Direct('Code')),
            ],
        )
        rows = [(5, 'USD'), (6, 'EUR')]
        target = RecordingUpsertConnection(mapping.target_column_names, ['currency_id'],
                                           lookups={companies_query: [2, 1]})

        first = OrderedUpsertMigration(mapping, upsert_settings, make_source(mapping.source_columns, rows),
                                       target).run()
        after_first = dict(target.table)
        second = OrderedUpsertMigration(mapping, upsert_settings, make_source(mapping.source_columns, rows),
                                        target).run()

        assert after_first == {
            (5001,): (5001, 1, 'USD'), (5002,): (5002, 2, 'USD'),
            (6001,): (6001, 1, 'EUR'), (6002,): (6002, 2, 'EUR'),
        }
        assert target.table == after_first
        assert (first.rows_updated, second.rows_updated) == (0, 4)
        assert first.records_inserted == second.records_inserted == 2
        assert first.target_rows_written == second.target_rows_written == 4
